# src/pisogate/models/rate.py
"""Admin-owned pricing table."""

from sqlalchemy import Integer
from sqlalchemy.orm import Mapped, mapped_column

from pisogate.db.session import Base


class Rate(Base):
    """Mapping of a credit amount to granted minutes and speed limits."""

    __tablename__ = "rate"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pesos: Mapped[int] = mapped_column(Integer, unique=True, nullable=False)
    minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    download_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    upload_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
