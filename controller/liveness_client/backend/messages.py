"""Decoding of inbound streaming messages."""
from __future__ import annotations

import json
from typing import Union

from pydantic import ValidationError

from ..errors import ParseError
from ..models import CompletionSignal, InboundResult

StreamMessage = Union[InboundResult, CompletionSignal]

STOP_COMMAND = "stop"


def decode_message(raw: Union[str, bytes]) -> StreamMessage:
    """Decode one inbound message into exactly one known variant.

    ``status`` is the discriminator: a message carrying it must be the
    completion marker, anything else must be a per-frame result.
    """
    if isinstance(raw, bytes):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(repr(raw[:64]), "binary message is not utf-8") from exc

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ParseError(raw, "invalid JSON") from exc

    if not isinstance(payload, dict):
        raise ParseError(raw, "expected a JSON object")

    try:
        if "status" in payload:
            return CompletionSignal.model_validate(payload)
        return InboundResult.model_validate(payload)
    except ValidationError as exc:
        raise ParseError(raw, f"unrecognised message shape ({exc.error_count()} errors)") from exc


__all__ = ["StreamMessage", "STOP_COMMAND", "decode_message"]
