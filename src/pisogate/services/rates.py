"""Rate table: converts credit amounts into granted network time.

Rates are owned by configuration. The ledger only reads them, and a
session copies the figures it was sold under, so editing a rate changes
future conversions only.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from pisogate.models import Rate

logger = logging.getLogger(__name__)


class RateError(RuntimeError):
    """Base exception for rate table operations."""


class RateNotFoundError(RateError):
    """Raised when a rate id does not exist."""


class RateConflictError(RateError):
    """Raised when a rate for the same amount already exists."""


@dataclass(frozen=True)
class RateQuote:
    """Result of converting an amount through the rate table."""

    pesos: int
    minutes: int
    download_limit: int = 0
    upload_limit: int = 0
    matched: bool = True

    @property
    def seconds(self) -> int:
        return self.minutes * 60


class RateTable:
    """Read access plus admin CRUD for the ``rate`` table."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        fallback_minutes_per_peso: int = 10,
    ) -> None:
        self._session_factory = session_factory
        self.fallback_minutes_per_peso = fallback_minutes_per_peso

    def quote(self, amount: int, db: Session | None = None) -> RateQuote:
        """Convert ``amount`` into minutes.

        An exact rate row wins; any other amount converts at the fallback
        minutes-per-peso figure so that credit is never worth zero.
        """
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        if db is None:
            with self._session_factory() as own_db:
                return self._quote(own_db, amount)
        return self._quote(db, amount)

    def _quote(self, db: Session, amount: int) -> RateQuote:
        rate = db.scalars(select(Rate).where(Rate.pesos == amount)).first()
        if rate is not None:
            return RateQuote(
                pesos=amount,
                minutes=rate.minutes,
                download_limit=rate.download_limit,
                upload_limit=rate.upload_limit,
            )
        logger.debug("No rate for %s; using fallback conversion", amount)
        return RateQuote(
            pesos=amount,
            minutes=amount * self.fallback_minutes_per_peso,
            matched=False,
        )

    def list_rates(self, db: Session) -> list[Rate]:
        return list(db.scalars(select(Rate).order_by(Rate.pesos)))

    def create_rate(
        self,
        db: Session,
        *,
        pesos: int,
        minutes: int,
        download_limit: int = 0,
        upload_limit: int = 0,
    ) -> Rate:
        rate = Rate(
            pesos=pesos,
            minutes=minutes,
            download_limit=download_limit,
            upload_limit=upload_limit,
        )
        db.add(rate)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise RateConflictError(f"A rate for {pesos} already exists") from exc
        db.refresh(rate)
        logger.info("Rate added: %s -> %s minutes", pesos, minutes)
        return rate

    def update_rate(self, db: Session, rate_id: int, **changes: int | None) -> Rate:
        rate = db.get(Rate, rate_id)
        if rate is None:
            raise RateNotFoundError(f"Rate {rate_id} not found")
        for field, value in changes.items():
            if value is not None:
                setattr(rate, field, value)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise RateConflictError(f"A rate for {rate.pesos} already exists") from exc
        db.refresh(rate)
        logger.info("Rate %s updated", rate_id)
        return rate

    def delete_rate(self, db: Session, rate_id: int) -> None:
        rate = db.get(Rate, rate_id)
        if rate is None:
            raise RateNotFoundError(f"Rate {rate_id} not found")
        db.delete(rate)
        db.commit()
        logger.info("Rate %s deleted", rate_id)
