"""System endpoints exposing a sanitized view of the gateway configuration."""

from __future__ import annotations

from fastapi import APIRouter

from ..dependencies import RuntimeDep

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/config")
async def get_public_config(runtime: RuntimeDep) -> dict[str, object]:
    """Return a sanitized snapshot of public runtime configuration.

    Excludes secrets, keys and connection strings.
    """
    config = runtime.config
    return {
        "app": {
            "name": config.app_name,
            "version": config.app_version,
            "machine_id": config.machine_id,
        },
        "coins": {
            "denominations": runtime.pulses.table.as_dict(),
            "fallback_units_per_pulse": runtime.pulses.table.fallback_units_per_pulse,
            "debounce_ms": config.pulse_debounce_ms,
            "settle_ms": config.pulse_settle_ms,
            "claim_seconds": config.coin_slot_claim_seconds,
        },
        "sessions": {
            "fallback_minutes_per_peso": config.fallback_minutes_per_peso,
            "sweep_interval_seconds": config.sweep_interval_seconds,
        },
        "telemetry": {
            "enabled": runtime.telemetry.client.enabled,
            "heartbeat_interval_seconds": config.heartbeat_interval_seconds,
        },
    }
