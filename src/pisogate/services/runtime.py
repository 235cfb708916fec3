"""Explicitly constructed service graph for one running gateway."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from sqlalchemy.orm import Session

from pisogate.core.settings import Settings
from pisogate.services.credit_spool import CreditSpool
from pisogate.services.credits import CreditRouter
from pisogate.services.enforcement import (
    EnforcementBackend,
    EnforcementSynchronizer,
    ReconcileReport,
    build_backend,
)
from pisogate.services.guard import SecurityGuard
from pisogate.services.ledger import SessionLedger
from pisogate.services.periodic import PeriodicTask
from pisogate.services.pulse import DenominationTable, PulseAggregator, SerialPulseSource
from pisogate.services.rates import RateTable
from pisogate.services.telemetry import (
    SyncQueue,
    TelemetryClient,
    TelemetryWorker,
    load_telemetry_config,
)

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SECONDS = 60.0


@dataclass
class Runtime:
    """Owns every long-lived service and their background tasks."""

    config: Settings
    rates: RateTable
    ledger: SessionLedger
    enforcement: EnforcementSynchronizer
    guard: SecurityGuard
    sync_queue: SyncQueue
    telemetry: TelemetryWorker
    spool: CreditSpool
    credits: CreditRouter
    pulses: PulseAggregator
    sweeper: PeriodicTask
    maintenance: PeriodicTask
    serial_source: SerialPulseSource | None = None
    started: bool = False

    @classmethod
    def build(
        cls,
        config: Settings,
        session_factory: Callable[[], Session],
        *,
        backend: EnforcementBackend | None = None,
        telemetry_client: TelemetryClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> Runtime:
        backend = backend or build_backend(
            config.enforcement_backend,
            binary=config.iptables_binary,
            timeout_seconds=config.enforcement_command_timeout_seconds,
        )
        enforcement = EnforcementSynchronizer(
            backend,
            max_attempts=config.enforcement_max_attempts,
            backoff_seconds=config.enforcement_backoff_seconds,
        )
        rates = RateTable(session_factory, fallback_minutes_per_peso=config.fallback_minutes_per_peso)
        sync_queue = SyncQueue(
            session_factory,
            max_retries=config.telemetry_max_retries,
            batch_size=config.telemetry_batch_size,
            clock=clock,
        )
        ledger = SessionLedger(
            session_factory,
            rates,
            enforcement=enforcement,
            sales=sync_queue,
            machine_id=config.machine_id,
            sweep_batch_size=config.sweep_batch_size,
            ended_retention_seconds=config.ended_session_retention_seconds,
            clock=clock,
        )
        guard = SecurityGuard(
            max_requests=config.rate_limit_max_requests,
            window_seconds=config.rate_limit_window_seconds,
            block_seconds=config.rate_limit_block_seconds,
            ip_history_size=config.ip_history_size,
            ip_window_seconds=config.ip_window_seconds,
            ip_diversity_threshold=config.ip_diversity_threshold,
            cache_size=config.fingerprint_cache_size,
        )
        telemetry = TelemetryWorker(
            sync_queue,
            telemetry_client or TelemetryClient(load_telemetry_config(config)),
            metrics=lambda: {"active_sessions": ledger.active_count()},
            flush_interval_seconds=config.telemetry_flush_interval_seconds,
            heartbeat_interval_seconds=config.heartbeat_interval_seconds,
        )
        sync_queue.subscribe(telemetry.notify_enqueued)
        spool = CreditSpool(config.credit_spool_path)
        credits = CreditRouter(ledger, spool, claim_seconds=config.coin_slot_claim_seconds)
        pulses = PulseAggregator(
            DenominationTable(
                config.pulse_denominations,
                config.pulse_fallback_units_per_pulse,
            ),
            credits.handle,
            spool=spool,
            debounce_seconds=config.pulse_debounce_ms / 1000.0,
            settle_seconds=config.pulse_settle_ms / 1000.0,
            queue_size=config.pulse_queue_size,
        )
        serial_source = (
            SerialPulseSource(pulses, config.pulse_serial_port)
            if config.pulse_serial_port
            else None
        )

        runtime = cls(
            config=config,
            rates=rates,
            ledger=ledger,
            enforcement=enforcement,
            guard=guard,
            sync_queue=sync_queue,
            telemetry=telemetry,
            spool=spool,
            credits=credits,
            pulses=pulses,
            sweeper=PeriodicTask("expiry-sweep", lambda: runtime.sweep_once(), config.sweep_interval_seconds),
            maintenance=PeriodicTask(
                "maintenance",
                lambda: runtime.maintain_once(),
                MAINTENANCE_INTERVAL_SECONDS,
            ),
            serial_source=serial_source,
        )
        return runtime

    async def start(self) -> None:
        """Reconcile enforcement with the ledger, then start background work."""
        if self.started:
            return
        report = await self.reconcile()
        if report.failed:
            logger.warning("Startup reconciliation left %d bindings unapplied", len(report.failed))
        await self.enforcement.start()
        await self.pulses.start()
        if self.serial_source is not None:
            self.serial_source.start()
        await self.telemetry.start()
        await self.sweeper.start()
        await self.maintenance.start()
        self.started = True
        logger.info("Gateway runtime started")

    async def stop(self) -> None:
        if not self.started:
            return
        await self.maintenance.stop()
        await self.sweeper.stop()
        if self.serial_source is not None:
            self.serial_source.stop()
        await self.pulses.stop()
        await self.telemetry.stop()
        await self.enforcement.stop()
        self.started = False
        logger.info("Gateway runtime stopped")

    async def reconcile(self) -> ReconcileReport:
        return await self.enforcement.reconcile(self.ledger.active_bindings)

    async def sweep_once(self) -> None:
        await asyncio.to_thread(self.ledger.expire_sweep)
        if self.enforcement.dirty:
            logger.info("Enforcement drift suspected; reconciling")
            await self.reconcile()

    async def maintain_once(self) -> None:
        await asyncio.to_thread(self.ledger.purge_ended)
        replayed = await asyncio.to_thread(self.credits.replay_spool)
        if replayed:
            logger.info("Replayed %d spooled credits", replayed)

    def status(self) -> dict[str, Any]:
        return {
            "active_sessions": self.ledger.active_count(),
            "enforcement_pending": self.enforcement.pending,
            "enforcement_dirty": self.enforcement.dirty,
            "spooled_credits": len(self.spool),
            "rejected_credits": len(self.spool.rejected()),
            "telemetry": self.telemetry.stats(),
        }
