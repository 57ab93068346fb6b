"""Customer contact profile used to address notifications."""

import uuid
from typing import Optional

from sqlalchemy import Boolean, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from freshdrop.database.base import BaseModel


class CustomerProfile(BaseModel):
    """
    Contact details for a customer identity.

    ``user_id`` is the subject of the auth provider's token; the profile is
    written by the account flow and only read here.
    """

    __tablename__ = "customer_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        nullable=False,
        unique=True,
        index=True,
        comment="Auth provider subject",
    )
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    first_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    last_name: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    email_notifications: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )
    sms_notifications: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=True
    )

    @property
    def display_name(self) -> str:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or "there"
