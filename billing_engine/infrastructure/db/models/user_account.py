"""
User Account Database Model

Read-side mirror of the external user directory.
"""

from typing import Optional

from sqlmodel import Field

from billing_engine.infrastructure.db.models.base import TimestampMixin


class UserAccountModel(TimestampMixin, table=True):
    """Maps to the 'users' table. The id is issued by the identity provider."""

    __tablename__ = "users"

    id: str = Field(primary_key=True, max_length=36)
    email: str = Field(max_length=320, index=True)
    full_name: Optional[str] = Field(default=None, max_length=200)
    phone: Optional[str] = Field(default=None, max_length=32)
