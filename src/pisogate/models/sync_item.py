"""SQLAlchemy model for telemetry items awaiting upstream delivery."""

from typing import Any

from sqlalchemy import JSON, VARCHAR, Float, Integer, SmallInteger
from sqlalchemy.orm import Mapped, mapped_column

from pisogate.db.session import Base

SYNC_KIND_SALE = "sale"
SYNC_KIND_STATUS = "status"


class SyncItem(Base):
    """Durably queued transaction or heartbeat for the upstream collector."""

    __tablename__ = "sync_item"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)  # FIFO order
    id: Mapped[str] = mapped_column(VARCHAR(32), unique=True, nullable=False)  # upstream dedup key
    kind: Mapped[str] = mapped_column(VARCHAR(16), nullable=False)  # 'sale', 'status'
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[float] = mapped_column(Float, nullable=False)
    retry_count: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
