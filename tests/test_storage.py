"""
Tests for artifact persistence and frame encoding.
"""

import asyncio

import numpy as np

from liveness_client.models import ResultArtifact
from liveness_client.sensors.webcam import encode_jpeg
from liveness_client.storage import ArtifactStore


class TestArtifactStore:

    def test_persist_creates_directory(self, tmp_path):
        store = ArtifactStore(tmp_path / "out")
        path = asyncio.run(store.persist(ResultArtifact("report.xlsx", b"data")))
        assert path == tmp_path / "out" / "report.xlsx"
        assert path.read_bytes() == b"data"

    def test_existing_file_is_not_overwritten(self, tmp_path):
        store = ArtifactStore(tmp_path)
        first = asyncio.run(store.persist(ResultArtifact("report.xlsx", b"one")))
        second = asyncio.run(store.persist(ResultArtifact("report.xlsx", b"two")))
        assert first.read_bytes() == b"one"
        assert second.name == "report_1.xlsx"
        assert second.read_bytes() == b"two"

    def test_path_components_are_stripped(self, tmp_path):
        store = ArtifactStore(tmp_path)
        path = asyncio.run(store.persist(ResultArtifact("../../evil.xlsx", b"x")))
        assert path.parent == tmp_path


def test_encode_jpeg_produces_jpeg():
    image = np.zeros((48, 64, 3), dtype=np.uint8)
    data = encode_jpeg(image, quality=80)
    assert data is not None
    assert data[:2] == b"\xff\xd8"
