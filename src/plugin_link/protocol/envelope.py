"""Command envelope and its wire codec.

Every frame on the socket is one UTF-8 JSON object:

    {"id": "0b6f...", "type": "draw", "payload": {...},
     "timestamp": 1718000000000, "status": "pending", "senderID": "com.x.y"}

Replies reuse the request's `id`, carry `type = "response"` and a final
status; error replies add an `error` string:

    {"id": "0b6f...", "type": "response", "payload": null,
     "timestamp": 1718000000042, "status": "error", "error": "boom"}

Older hosts send `uuid` and `pluginID` instead; both are
accepted as aliases when decoding.
"""

from __future__ import annotations

import json
import time
import uuid
from enum import Enum
from typing import Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_core import PydanticSerializationError, to_jsonable_python

from ..errors import DecodeError, EncodeError

RESPONSE_TYPE = "response"
STARTUP_TYPE = "startup"


def new_envelope_id() -> str:
    """Generate a collision-resistant envelope id."""
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class EnvelopeStatus(str, Enum):
    """Status of an envelope. Only meaningful on replies."""

    PENDING = "pending"
    SUCCESS = "success"
    ERROR = "error"


class CommandEnvelope(BaseModel):
    """The unit exchanged over the wire.

    An envelope is built right before it is encoded and dropped once it has
    been written or handled. It is never persisted or retried.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(
        default_factory=new_envelope_id,
        min_length=1,
        validation_alias=AliasChoices("id", "uuid"),
    )
    type: str = Field(min_length=1)
    payload: Any = None
    timestamp: int = Field(default_factory=now_ms)
    status: EnvelopeStatus = EnvelopeStatus.PENDING
    error: str | None = None
    sender_id: str | None = Field(
        default=None,
        alias="senderID",
        validation_alias=AliasChoices("senderID", "pluginID", "sender_id"),
    )

    @field_validator("timestamp", mode="before")
    @classmethod
    def _coerce_timestamp(cls, value: Any) -> Any:
        if isinstance(value, float):
            return int(value)
        if value is None:
            return now_ms()
        return value

    @field_validator("error", mode="before")
    @classmethod
    def _coerce_error(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False, default=str)

    @classmethod
    def request(
        cls,
        command: str,
        payload: Any = None,
        sender_id: str | None = None,
    ) -> CommandEnvelope:
        """Create a new request (or notification) envelope with a fresh id."""
        return cls(type=command, payload=payload, sender_id=sender_id)

    @classmethod
    def reply(
        cls,
        request_id: str,
        payload: Any = None,
        error: str | None = None,
        sender_id: str | None = None,
    ) -> CommandEnvelope:
        """Create the reply to `request_id`; an `error` makes it an error reply."""
        return cls(
            id=request_id,
            type=RESPONSE_TYPE,
            payload=payload,
            status=EnvelopeStatus.ERROR if error is not None else EnvelopeStatus.SUCCESS,
            error=error,
            sender_id=sender_id,
        )

    @property
    def is_reply(self) -> bool:
        """Check if this envelope is a reply to a call."""
        return self.type == RESPONSE_TYPE

    @property
    def is_success(self) -> bool:
        """Check if this envelope reports success."""
        return self.status == EnvelopeStatus.SUCCESS

    def to_frame(self) -> str:
        """Serialize to a text frame. See `encode`."""
        return encode(self)

    @classmethod
    def from_frame(cls, frame: str | bytes) -> CommandEnvelope:
        """Parse a text frame. See `decode`."""
        return decode(frame)

    def __str__(self) -> str:
        return f"CommandEnvelope(type={self.type}, id={self.id})"


def _check_keys(value: Any, path: str = "payload", _active: set[int] | None = None) -> None:
    """Reject dict keys JSON would silently turn into strings."""
    if not isinstance(value, dict | list | tuple):
        return
    active = _active if _active is not None else set()
    if id(value) in active:
        raise EncodeError(f"Circular reference at {path}")
    active.add(id(value))
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise EncodeError(f"Non-string key {key!r} at {path}")
            _check_keys(item, f"{path}.{key}", active)
    else:
        for index, item in enumerate(value):
            _check_keys(item, f"{path}[{index}]", active)
    active.discard(id(value))


def encode(envelope: CommandEnvelope) -> str:
    """Serialize an envelope to a compact JSON text frame.

    Pydantic models anywhere in the payload are written in their JSON form.

    Raises:
        EncodeError: If the payload is not representable as JSON
            (cycles, non-string dict keys, arbitrary objects, NaN/Infinity)
    """
    _check_keys(envelope.payload)

    data: dict[str, Any] = {
        "id": envelope.id,
        "type": envelope.type,
        "payload": envelope.payload,
        "timestamp": envelope.timestamp,
        "status": envelope.status.value,
    }
    if envelope.error is not None:
        data["error"] = envelope.error
    if envelope.sender_id is not None:
        data["senderID"] = envelope.sender_id

    try:
        return json.dumps(
            data,
            ensure_ascii=False,
            separators=(",", ":"),
            allow_nan=False,
            default=to_jsonable_python,
        )
    except (TypeError, ValueError, PydanticSerializationError) as e:
        raise EncodeError(f"Cannot encode {envelope}: {e}") from e


def decode(frame: str | bytes) -> CommandEnvelope:
    """Parse a text frame into an envelope.

    Raises:
        DecodeError: If the frame is not UTF-8 JSON, not an object, or lacks
            a usable `id`/`type`
    """
    if isinstance(frame, bytes | bytearray):
        try:
            frame = bytes(frame).decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"Invalid UTF-8 encoding: {e}", frame=bytes(frame)) from e

    try:
        obj = json.loads(frame)
    except json.JSONDecodeError as e:
        raise DecodeError(f"Invalid JSON: {e}", frame=frame) from e

    if not isinstance(obj, dict):
        raise DecodeError(f"Frame is not a JSON object: {type(obj).__name__}", frame=frame)

    # Inbound envelopes must carry their own id; only new requests get a fresh one
    if obj.get("id") is None:
        # A null `id` falls back to the legacy `uuid` key
        obj.pop("id", None)
        if obj.get("uuid") is None:
            raise DecodeError("Invalid envelope fields: id", frame=frame)

    try:
        return CommandEnvelope.model_validate(obj)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise DecodeError(f"Invalid envelope fields: {fields}", frame=frame) from e
