"""
Processed Payment Event Model

Claim rows that make settlement of a gateway reference at-most-once.
"""

from datetime import datetime

from sqlmodel import Field, SQLModel

from billing_engine.infrastructure.db.models.base import UTCDateTime, utcnow


class ProcessedPaymentEventModel(SQLModel, table=True):
    """Maps to 'processed_payment_events'. Key format: ``<gateway>:<reference>``."""

    __tablename__ = "processed_payment_events"

    event_key: str = Field(primary_key=True, max_length=300)
    outcome: str = Field(max_length=20)
    processed_at: datetime = Field(
        default_factory=utcnow, sa_type=UTCDateTime, nullable=False, index=True
    )
