"""Writes retrieved result artifacts to disk."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .models import ResultArtifact

logger = logging.getLogger(__name__)


class ArtifactStore:
    def __init__(self, directory: Path) -> None:
        self.directory = Path(directory).expanduser()

    async def persist(self, artifact: ResultArtifact) -> Path:
        return await asyncio.to_thread(self._write, artifact)

    def _write(self, artifact: ResultArtifact) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        target = self._free_path(Path(artifact.filename).name or "results.bin")
        target.write_bytes(artifact.content)
        logger.info("Results file saved at %s", target)
        return target

    def _free_path(self, name: str) -> Path:
        candidate = self.directory / name
        stem, suffix = candidate.stem, candidate.suffix
        index = 1
        while candidate.exists():
            candidate = self.directory / f"{stem}_{index}{suffix}"
            index += 1
        return candidate


__all__ = ["ArtifactStore"]
