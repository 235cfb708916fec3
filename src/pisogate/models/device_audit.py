"""Audit trail for device identity anomalies."""

from datetime import datetime

from sqlalchemy import VARCHAR, DateTime, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column

from pisogate.db.session import Base
from pisogate.db.time import utcnow


class DeviceAudit(Base):
    """A MAC change or flagged anomaly observed for a device-id."""

    __tablename__ = "device_audit"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    device_id: Mapped[str] = mapped_column(VARCHAR(128), nullable=False, index=True)
    event: Mapped[str] = mapped_column(VARCHAR(32), nullable=False)  # e.g. 'mac_change'
    old_mac: Mapped[str | None] = mapped_column(VARCHAR(17), nullable=True)
    new_mac: Mapped[str | None] = mapped_column(VARCHAR(17), nullable=True)
    old_ip: Mapped[str | None] = mapped_column(VARCHAR(45), nullable=True)
    new_ip: Mapped[str | None] = mapped_column(VARCHAR(45), nullable=True)
    detail: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
