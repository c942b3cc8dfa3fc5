"""
Event envelope shared by every service on the event channel.

Events are immutable facts. Each service declares its own payload schemas
(only the fields it depends on) and validates incoming payloads against them
with parse_payload(); a mismatch raises EventSchemaError so the channel can
dead-letter the message instead of silently proceeding.
"""
import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

EVENT_VERSION = "1.0.0"

PayloadT = TypeVar("PayloadT", bound="EventPayload")


class EventSchemaError(Exception):
    """Raised when a message body or payload does not match the expected schema."""


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase keys on the wire."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EventPayload(CamelModel):
    """Base class for typed event payloads. Unknown publisher fields are ignored."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EventMetadata(CamelModel):
    """Optional tracing information carried alongside the payload."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    user_id: Optional[str] = None


class Event(CamelModel):
    """
    Envelope for a published fact.

    Attributes:
        id (str): Unique event identifier, used for idempotent consumption
        type (str): Dot-separated event name, also the routing key (e.g. "order.created")
        timestamp (datetime): When the event was created (UTC)
        version (str): Envelope version
        source (str): Name of the publishing service
        payload (dict): Type-specific body
        metadata (EventMetadata): Optional correlation / causation ids
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str = EVENT_VERSION
    source: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    metadata: Optional[EventMetadata] = None

    def to_json(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


def create_event(
    event_type: str,
    payload: BaseModel,
    source: str,
    metadata: Optional[EventMetadata] = None,
) -> Event:
    """
    Build an envelope around a typed payload.

    Args:
        event_type: Event name / routing key
        payload: Payload model, serialized with camelCase keys
        source: Publishing service name
        metadata: Optional correlation information

    Returns:
        A new Event with a fresh id and timestamp
    """
    return Event(
        type=event_type,
        source=source,
        payload=payload.model_dump(mode="json", by_alias=True, exclude_none=True),
        metadata=metadata,
    )


def caused_by(event: Event) -> EventMetadata:
    """Metadata for an event published in reaction to ``event``."""
    correlation_id = event.metadata.correlation_id if event.metadata else None
    return EventMetadata(correlation_id=correlation_id or event.id, causation_id=event.id)


def decode_event(body: bytes) -> Event:
    """
    Decode a raw message body into an Event envelope.

    Raises:
        EventSchemaError: If the body is not JSON or not a valid envelope
    """
    try:
        data = json.loads(body)
    except (UnicodeDecodeError, ValueError) as e:
        raise EventSchemaError(f"Message body is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise EventSchemaError("Message body must be a JSON object")
    try:
        return Event.model_validate(data)
    except PydanticValidationError as e:
        raise EventSchemaError(f"Invalid event envelope: {e}") from e


def parse_payload(event: Event, schemas: Mapping[str, Type[PayloadT]]) -> PayloadT:
    """
    Validate an event payload against the schema registered for its type.

    Args:
        event: Decoded envelope
        schemas: Mapping of event type to payload model for the consuming service

    Returns:
        The validated payload model

    Raises:
        EventSchemaError: If the type is unknown or the payload does not validate
    """
    schema = schemas.get(event.type)
    if schema is None:
        raise EventSchemaError(f"No payload schema registered for event type '{event.type}'")
    try:
        return schema.model_validate(event.payload)
    except PydanticValidationError as e:
        raise EventSchemaError(f"Invalid payload for {event.type} ({event.id}): {e}") from e
