# src/pisogate/models/wifi_session.py
"""SQLAlchemy model for paid device sessions."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import VARCHAR, BigInteger, DateTime, Float, Index, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pisogate.db.session import Base
from pisogate.db.time import utcnow

SESSION_STATE_ACTIVE = "active"
SESSION_STATE_EXPIRED = "expired"
SESSION_STATE_REVOKED = "revoked"


class WifiSession(Base):
    """Authoritative record of a device's paid network time.

    A MAC address has at most one ``active`` row. Ended rows are kept for
    history until the idle cleanup purges them; they are never reactivated.
    """

    __tablename__ = "wifi_session"
    __table_args__ = (Index("ix_wifi_session_mac_state", "mac", "state"),)

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True)
    mac: Mapped[str] = mapped_column(VARCHAR(17), nullable=False, index=True)
    ip: Mapped[str | None] = mapped_column(VARCHAR(45), nullable=True)
    device_id: Mapped[str | None] = mapped_column(VARCHAR(128), nullable=True, index=True)
    state: Mapped[str] = mapped_column(
        VARCHAR(16), nullable=False, default=SESSION_STATE_ACTIVE, index=True
    )  # 'active', 'expired', 'revoked'
    remaining_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    download_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upload_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    token: Mapped[str | None] = mapped_column(VARCHAR(64), unique=True, nullable=True)
    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_seen: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    # Epoch seconds up to which remaining_seconds has already been charged.
    timer_anchor: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    ended_at: Mapped[float | None] = mapped_column(Float, nullable=True)
    end_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_active(self) -> bool:
        """Return True when the session still permits traffic."""
        return self.state == SESSION_STATE_ACTIVE and self.remaining_seconds > 0
