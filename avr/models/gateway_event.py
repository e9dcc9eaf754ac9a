from __future__ import annotations

from typing import Optional

from sqlalchemy import Index
from sqlalchemy.orm import Mapped, mapped_column

from avr.extensions import db
from avr.models.mixins import TimestampMixin


class GatewayEvent(db.Model, TimestampMixin):
    """Verified webhook delivery; one row per gateway event id."""

    __tablename__ = "gateway_events"
    __table_args__ = (
        Index("ix_gateway_events_type_created", "type", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)

    event_id: Mapped[str] = mapped_column(
        db.String(120),
        unique=True,
        index=True,
        nullable=False,
        doc="Gateway event id from the webhook envelope",
    )

    type: Mapped[str] = mapped_column(
        db.String(60),
        index=True,
        nullable=False,
        doc="cardTransaction, terminalCancel, ...",
    )

    object_id: Mapped[Optional[str]] = mapped_column(
        db.String(120),
        nullable=True,
        index=True,
        doc="Transaction id extracted from the event, if any",
    )

    outcome: Mapped[Optional[str]] = mapped_column(
        db.String(30),
        nullable=True,
        doc="completed / already_completed / not_found / ignored",
    )
