"""Message parsers for bus payloads."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from changewire.errors import ParseError
from changewire.pipeline.envelope import EventEnvelope


class MessageParser(ABC):
    """Base parser contract for message bodies."""

    @abstractmethod
    def parse(self, body: bytes) -> Any:
        """Parse raw bytes into a typed payload."""


class JSONParser(MessageParser):
    """Parse UTF-8 JSON payloads into dictionaries."""

    def parse(self, body: bytes) -> dict[str, Any]:
        if body is None:
            raise ParseError("Message has no payload")
        try:
            parsed = json.loads(body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise ParseError(f"Failed to parse JSON payload: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ParseError("JSON payload must decode to an object")
        return parsed


class EnvelopeParser(MessageParser):
    """Parse JSON payloads into EventEnvelope instances."""

    def __init__(self) -> None:
        self._json = JSONParser()

    def parse(self, body: bytes) -> EventEnvelope:
        return EventEnvelope.from_dict(self._json.parse(body))
