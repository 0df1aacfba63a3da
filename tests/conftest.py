"""
Test fixtures and configuration.

Settings are read from the environment once, so the test environment is
set before anything from argus is imported.
"""
import os

from cryptography.fernet import Fernet

os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ.setdefault("INTERNAL_API_KEY", "test-internal-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret")

from datetime import datetime  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import AsyncGenerator  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from argus.audit import register_audit_listeners  # noqa: E402
from argus.database import Base  # noqa: E402
from argus.exceptions import RpcFailure  # noqa: E402
from argus.services.payout_backend import OperationStatus, PayoutBackend, ShieldResult, WalletBalance  # noqa: E402
from argus.services.zcash import validate_zcash_address  # noqa: E402

import argus.models  # noqa: E402,F401

NOW = datetime(2026, 1, 1, 12, 0, 0)
INTERNAL_HEADERS = {"X-Internal-Key": "test-internal-key"}
TRANSPARENT_ADDRESS = "t1" + "A" * 33


def zaddr(n: int = 0) -> str:
    """A syntactically valid Sapling address, distinct per ``n``."""
    return f"zs1{n:03d}" + "q" * 72


async def no_sleep(_seconds) -> None:
    return None


class FakeBackend(PayoutBackend):
    """In-process payout rail that records every send."""

    asset = "zec"

    def __init__(
        self,
        balance: Decimal = Decimal("1000"),
        synced=True,
        fail_amounts=(),
        stuck_amounts=(),
        transparent: Decimal = Decimal("0"),
    ):
        super().__init__(poll_interval=0, max_polls=3, sleep=no_sleep)
        self.balance = balance
        self.synced = synced
        self.fail_amounts = {Decimal(str(a)) for a in fail_amounts}
        self.stuck_amounts = {Decimal(str(a)) for a in stuck_amounts}
        self.transparent = transparent
        self.shielded: list[Decimal] = []
        self.sent: list[tuple[str, Decimal, str]] = []
        self._operations: dict[str, OperationStatus] = {}

    def validate_address(self, address: str) -> bool:
        return validate_zcash_address(address).is_shielded

    async def is_chain_synced(self) -> bool:
        if isinstance(self.synced, Exception):
            raise self.synced
        return self.synced

    async def get_balance(self) -> WalletBalance:
        return WalletBalance(available=self.balance, transparent=self.transparent)

    async def send_payment(self, to_address: str, amount: Decimal, memo: str = "") -> str:
        amount = Decimal(amount)
        self.sent.append((to_address, amount, memo))
        operation_id = f"opid-{len(self.sent)}"
        if amount in self.fail_amounts:
            status = OperationStatus(operation_id, "failed", error="tx unpaid action limit exceeded")
        elif amount in self.stuck_amounts:
            status = OperationStatus(operation_id, "executing")
        else:
            status = OperationStatus(operation_id, "success", tx_id=f"tx{len(self.sent):04d}")
        self._operations[operation_id] = status
        return operation_id

    async def get_operation_status(self, operation_id: str) -> OperationStatus:
        try:
            return self._operations[operation_id]
        except KeyError:
            raise RpcFailure(f"Operation {operation_id} not found") from None

    async def shield_incoming(self):
        if self.transparent <= Decimal("0.0001"):
            return None
        amount = self.transparent - Decimal("0.0001")
        self.shielded.append(amount)
        self.transparent = Decimal("0")
        return ShieldResult(operation_id=f"opid-shield-{len(self.shielded)}", amount=amount)


@pytest.fixture(scope="session", autouse=True)
def audit_listeners():
    register_audit_listeners()


@pytest_asyncio.fixture
async def engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest_asyncio.fixture
async def client(session_factory, backend) -> AsyncGenerator[AsyncClient, None]:
    """
    HTTP client against the app with the test database and fake backend.
    The lifespan is not run; app state is wired here instead.
    """
    from argus.database import get_db
    from argus.main import app
    from argus.middleware.rate_limit import limiter
    from argus.services.payout_worker import PayoutWorker
    from argus.services.price_oracle import FixedPriceOracle

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.state.payout_backend = backend
    app.state.payout_worker = PayoutWorker(
        session_factory, backend, jitter_fn=lambda: 0, sleep=no_sleep
    )
    app.state.price_oracle = FixedPriceOracle({("zec", "USD"): Decimal("30")})
    limiter.enabled = False

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
    limiter.enabled = True
