# tests/conftest.py
from __future__ import annotations

import os
from collections.abc import Generator, Iterator
from pathlib import Path

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

os.environ.setdefault("PYTEST_RUNNING", "true")

from pisogate.api.v1.dependencies import resolve_client_mac
from pisogate.core.security import create_access_token
from pisogate.core.settings import Settings
from pisogate.db.session import Base
from pisogate.db.session import get_db as app_get_session
from pisogate.main import app as fastapi_app
from pisogate.models import Rate
from pisogate.services.credit_spool import CreditSpool
from pisogate.services.enforcement import EnforcementSynchronizer, MemoryBackend
from pisogate.services.ledger import SessionLedger
from pisogate.services.rates import RateTable
from pisogate.services.runtime import Runtime
from pisogate.services.telemetry import SyncQueue

CLIENT_MAC = "AA:BB:CC:00:11:22"
START_TIME = 1_760_000_000.0

# (pesos, minutes) seeded into every test database.
DEFAULT_RATES = [(1, 10), (5, 30), (10, 75)]


class FakeClock:
    """Manually advanced wall clock."""

    def __init__(self, start: float = START_TIME) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class RecordingSink:
    """Enforcement sink that records hand-offs instead of applying them."""

    def __init__(self) -> None:
        self.grants: list[tuple[str, str | None]] = []
        self.revokes: list[tuple[str, str | None]] = []

    def submit_grant(self, mac: str, ip: str | None) -> None:
        self.grants.append((mac, ip))

    def submit_revoke(self, mac: str, ip: str | None) -> None:
        self.revokes.append((mac, ip))


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "pisogate-test.db"


@pytest.fixture()
def engine(db_path: Path) -> Generator[Engine, None, None]:
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine: Engine) -> sessionmaker[Session]:
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    with factory() as db:
        db.add_all([Rate(pesos=p, minutes=m) for p, m in DEFAULT_RATES])
        db.commit()
    return factory


@pytest.fixture()
def db_session(session_factory: sessionmaker[Session]) -> Iterator[Session]:
    with session_factory() as session:
        yield session


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        enforcement_backend="memory",
        enforcement_max_attempts=3,
        enforcement_backoff_seconds=0.0,
        credit_spool_path=str(tmp_path / "credit-spool.jsonl"),
        rate_limit_max_requests=5,
        rate_limit_window_seconds=60.0,
        rate_limit_block_seconds=300.0,
        telemetry_enabled=False,
        machine_id="test-machine",
    )


@pytest.fixture()
def rates(session_factory: sessionmaker[Session]) -> RateTable:
    return RateTable(session_factory, fallback_minutes_per_peso=10)


@pytest.fixture()
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture()
def sync_queue(session_factory: sessionmaker[Session], clock: FakeClock) -> SyncQueue:
    return SyncQueue(session_factory, max_retries=5, batch_size=10, clock=clock)


@pytest.fixture()
def ledger(
    session_factory: sessionmaker[Session],
    rates: RateTable,
    sink: RecordingSink,
    sync_queue: SyncQueue,
    clock: FakeClock,
) -> SessionLedger:
    return SessionLedger(
        session_factory,
        rates,
        enforcement=sink,
        sales=sync_queue,
        machine_id="test-machine",
        clock=clock,
    )


@pytest.fixture()
def backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture()
def enforcement(backend: MemoryBackend) -> EnforcementSynchronizer:
    return EnforcementSynchronizer(backend, max_attempts=3, backoff_seconds=0.0)


@pytest.fixture()
def spool(tmp_path: Path) -> CreditSpool:
    return CreditSpool(tmp_path / "spool" / "credit-spool.jsonl")


@pytest.fixture()
def runtime(
    test_settings: Settings,
    session_factory: sessionmaker[Session],
    backend: MemoryBackend,
    clock: FakeClock,
) -> Runtime:
    return Runtime.build(test_settings, session_factory, backend=backend, clock=clock)


@pytest.fixture(scope="session")
def app() -> FastAPI:
    return fastapi_app


@pytest.fixture()
def client(
    app: FastAPI,
    runtime: Runtime,
    session_factory: sessionmaker[Session],
) -> Iterator[TestClient]:
    """API client wired to the per-test runtime.

    The client is not entered as a context manager, so application startup
    (which would build the production runtime) does not run.
    """

    def _get_session_override() -> Generator[Session, None, None]:
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[app_get_session] = _get_session_override
    app.dependency_overrides[resolve_client_mac] = lambda: CLIENT_MAC
    app.state.runtime = runtime
    try:
        yield TestClient(app, base_url="http://test")
    finally:
        app.dependency_overrides.pop(app_get_session, None)
        app.dependency_overrides.pop(resolve_client_mac, None)
        app.state.runtime = None


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    """Return authorization headers for the configured administrator."""
    token = create_access_token("admin")
    return {"Authorization": f"Bearer {token}"}
