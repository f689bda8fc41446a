"""
Plan Database Model

SQLModel table for the plan catalog. Each price change is a new row.
"""

from typing import Any, Dict, Optional

from sqlalchemy import JSON
from sqlmodel import Field

from billing_engine.infrastructure.db.models.base import TimestampMixin, UUIDMixin


class PlanModel(UUIDMixin, TimestampMixin, table=True):
    """
    Plan table.

    Maps to the 'plans' table. ``features`` holds the ordered
    feature-limit map as JSON objects tagged by ``kind``.
    """

    __tablename__ = "plans"

    name: str = Field(max_length=100, index=True)
    monthly_price: int = Field(nullable=False)
    annual_price: int = Field(nullable=False)
    currency: str = Field(default="USD", max_length=3)
    features: Dict[str, Any] = Field(default_factory=dict, sa_type=JSON)
    is_active: bool = Field(default=True, index=True)

    # Versioning
    version: int = Field(default=1)
    supersedes_id: Optional[str] = Field(default=None, foreign_key="plans.id", max_length=36)
