"""Wire messages exchanged with sandbox workers.

One JSON object per line. Field names on the wire are camelCase
(``requestId``, ``pluginId``, ``errorType``).

host -> sandbox::

    {"type": "load" | "call" | "hook", "requestId": ..., "data": {...}}
    {"type": "event", "data": {"event": ..., "data": ...}}
    {"type": "response", "requestId": ..., "success": ..., "result" | "error": ...}

sandbox -> host::

    {"type": "response", "requestId": ..., "success": ..., "result" | "error": ...}
    {"type": "log", "level": ..., "args": [...]}
    {"type": "call", "requestId": ..., "data": {"method": "storage.set", "args": [...]}}
"""

from __future__ import annotations

import json
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

MAX_LINE_BYTES = 16 * 1024 * 1024


class MessageType(StrEnum):
    """Message kinds."""

    LOAD = "load"
    CALL = "call"
    HOOK = "hook"
    RESPONSE = "response"
    EVENT = "event"
    LOG = "log"


class Message(BaseModel):
    """A protocol message."""

    model_config = ConfigDict(populate_by_name=True)

    type: MessageType
    plugin_id: str | None = Field(default=None, alias="pluginId")
    request_id: str | None = Field(default=None, alias="requestId")
    data: Any = None
    success: bool | None = None
    result: Any = None
    error: str | None = None
    error_type: str | None = Field(default=None, alias="errorType")
    permission: str | None = None
    level: str | None = None
    args: list[Any] | None = None

    def encode(self) -> bytes:
        """Serialise to a newline-terminated JSON line."""
        payload = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if self.type == MessageType.RESPONSE and self.success and "result" not in payload:
            # A successful response always carries a result, even when null
            payload["result"] = None
        return (json.dumps(payload, separators=(",", ":")) + "\n").encode()

    @classmethod
    def decode(cls, line: bytes | str) -> Message:
        """Parse one JSON line.

        Raises:
            ValueError: If the line isn't a valid message
        """
        try:
            return cls.model_validate_json(line)
        except ValidationError as e:
            raise ValueError(f"Invalid sandbox message: {e}") from e


def response(
    request_id: str,
    result: Any = None,
    error: BaseException | str | None = None,
) -> Message:
    """Build a response message for a request."""
    if error is None:
        return Message(
            type=MessageType.RESPONSE, request_id=request_id, success=True, result=result
        )

    error_type = None
    permission = None
    if isinstance(error, BaseException):
        error_type = type(error).__name__
        permission = getattr(error, "permission", None)
    return Message(
        type=MessageType.RESPONSE,
        request_id=request_id,
        success=False,
        error=str(error),
        error_type=error_type,
        permission=permission,
    )
