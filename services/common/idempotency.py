"""
Processed-event ledger.

Each service keeps a processed_events table in its own database. A consumer
checks the ledger before applying a side effect and records the event id in
the same session as that side effect, so a redelivered event is skipped.
The unique (event_id, consumer) constraint turns a concurrent duplicate into
an IntegrityError, which the channel retries and the retry then skips.
"""
from datetime import datetime
from sqlalchemy import Column, Integer, String, DateTime, UniqueConstraint
from sqlalchemy.orm import Session

from .events import Event


class ProcessedEventMixin:
    """
    Columns for the processed_events table; mixed into each service's Base.

    Attributes:
        id (int): Primary key
        event_id (str): Id of the consumed event
        consumer (str): Name of the coordinator that applied it
        event_type (str): Type of the consumed event
        processed_at (datetime): When the side effect was committed
    """
    __tablename__ = "processed_events"
    __table_args__ = (UniqueConstraint("event_id", "consumer", name="uq_processed_events_event_consumer"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, index=True)
    consumer = Column(String(100), nullable=False)
    event_type = Column(String(100), nullable=False)
    processed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


def already_processed(db: Session, model, event_id: str, consumer: str) -> bool:
    return (
        db.query(model.id)
        .filter(model.event_id == event_id, model.consumer == consumer)
        .first()
        is not None
    )


def mark_processed(db: Session, model, event: Event, consumer: str) -> None:
    """Add a ledger row for ``event`` and flush so a duplicate fails fast."""
    db.add(model(event_id=event.id, consumer=consumer, event_type=event.type))
    db.flush()
