"""Shared fixtures: temporary database, scriptable issuer, orchestrator."""

from __future__ import annotations

import asyncio
import itertools
from datetime import timedelta
from pathlib import Path

import pytest

from certflow.db.sqlite_runtime import close_all_connections, open_connection
from certflow.db.sqlite_schema import init_schema
from certflow.db.store import CertificateStore, DomainStore
from certflow.ssl.orchestrator import LifecycleOrchestrator
from certflow.ssl.types import (
    ChallengeType,
    OrderResult,
    OrderStatus,
    StatusResult,
    SubmitResult,
)
from certflow.utils.config import reset_config
from certflow.utils.time import utcnow


# ---------------------------------------------------------------------------
# Scriptable challenge issuer
# ---------------------------------------------------------------------------


class FakeIssuer:
    """In-memory issuer whose answers tests can script.

    By default an order is ISSUED on its ``ticks_to_issue``-th status query
    (``None`` keeps it pending forever). ``status_script`` and
    ``submit_script`` are consumed front to back before the defaults apply;
    exception instances in them are raised.
    """

    def __init__(self, *, ticks_to_issue: int | None = 2, expires_in: timedelta = timedelta(days=90)):
        self.ticks_to_issue = ticks_to_issue
        self.expires_in = expires_in
        self.status_script: list = []
        self.submit_script: list = []
        self.order_error: Exception | None = None
        self.revoke_error: Exception | None = None
        self.query_gate: asyncio.Event | None = None
        self.order_gate: asyncio.Event | None = None
        self.requested: list[tuple[str, ChallengeType]] = []
        self.queries: dict[str, int] = {}
        self.submitted: list[str] = []
        self.abandoned: list[str] = []
        self.revoked: list[str] = []
        self.closed = False
        self._ids = itertools.count(1)
        self._prefix = f"{id(self):x}"

    async def request_order(self, hostname: str, challenge_type: ChallengeType) -> OrderResult:
        self.requested.append((hostname, challenge_type))
        if self.order_gate is not None:
            await self.order_gate.wait()
        if self.order_error is not None:
            raise self.order_error
        order_id = f"order-{self._prefix}-{next(self._ids)}"
        if challenge_type is ChallengeType.HTTP01:
            token = f"token-{order_id}"
            return OrderResult(order_id=order_id, http_token=token, http_key_authorization=f"{token}.thumbprint")
        return OrderResult(
            order_id=order_id,
            dns_txt_name=f"_acme-challenge.{hostname}",
            dns_txt_value=f"txt-{order_id}",
        )

    async def query_status(self, order_id: str) -> StatusResult:
        if self.query_gate is not None:
            await self.query_gate.wait()
        count = self.queries[order_id] = self.queries.get(order_id, 0) + 1
        if self.status_script:
            item = self.status_script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        if self.ticks_to_issue is not None and count >= self.ticks_to_issue:
            return StatusResult(
                status=OrderStatus.ISSUED,
                expires_at=utcnow() + self.expires_in,
                certificate_pem="-----BEGIN CERTIFICATE-----\nZmFrZQ==\n-----END CERTIFICATE-----\n",
            )
        return StatusResult(status=OrderStatus.PENDING)

    async def submit_dns_validation(self, order_id: str) -> SubmitResult:
        self.submitted.append(order_id)
        if self.submit_script:
            item = self.submit_script.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        return SubmitResult(ok=True)

    async def abandon(self, order_id: str) -> None:
        self.abandoned.append(order_id)

    async def revoke(self, order_id: str) -> None:
        if self.revoke_error is not None:
            raise self.revoke_error
        self.revoked.append(order_id)

    async def aclose(self) -> None:
        self.closed = True


async def wait_for_status(orchestrator: LifecycleOrchestrator, cert_id: str, status, timeout: float = 3.0):
    """Poll ``get_status`` until the certificate reaches ``status``."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        view = await orchestrator.get_status(cert_id)
        if view.status is status:
            return view
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"cert {cert_id} stuck in {view.status.value}, expected {status.value}")
        await asyncio.sleep(0.01)


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Yield to the event loop until ``predicate()`` holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def fresh_config():
    """Reset the config singleton before and after every test."""
    reset_config()
    yield
    reset_config()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    path = tmp_path / "certflow.db"
    with open_connection(path) as conn:
        init_schema(conn)
    yield path
    close_all_connections()


@pytest.fixture()
def certificate_store(db_path: Path) -> CertificateStore:
    return CertificateStore(db_path)


@pytest.fixture()
def domain_store(db_path: Path) -> DomainStore:
    return DomainStore(db_path)


@pytest.fixture()
def issuer() -> FakeIssuer:
    return FakeIssuer()


@pytest.fixture()
async def make_orchestrator(db_path: Path):
    """Factory for orchestrators sharing the test database; all are shut down afterwards."""
    built: list[LifecycleOrchestrator] = []

    def _make(issuer, **overrides) -> LifecycleOrchestrator:
        options = {
            "poll_interval": 0.01,
            "poll_timeout": 3.0,
            "hostname_guard": False,
        }
        options.update(overrides)
        orchestrator = LifecycleOrchestrator(
            CertificateStore(db_path),
            DomainStore(db_path),
            issuer,
            **options,
        )
        built.append(orchestrator)
        return orchestrator

    yield _make
    for orchestrator in built:
        await orchestrator.shutdown()


@pytest.fixture()
async def orchestrator(make_orchestrator, issuer: FakeIssuer) -> LifecycleOrchestrator:
    return make_orchestrator(issuer)


@pytest.fixture()
def events(orchestrator: LifecycleOrchestrator) -> list:
    """Every lifecycle event the orchestrator emits, in order."""
    received: list = []
    orchestrator.notifier.subscribe(received.append)
    return received


@pytest.fixture()
async def domain(domain_store: DomainStore):
    """A verified custom domain."""
    return await domain_store.create("docs.example.com", "project-1", verified=True)


@pytest.fixture()
async def unverified_domain(domain_store: DomainStore):
    return await domain_store.create("blog.example.org", "project-1")
