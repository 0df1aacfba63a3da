"""
Argus Escrow — Payout Backend Interface
One capability per payout asset. The scheduler and worker only talk to this
interface, so adding a rail means adding an implementation, not branches.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from argus.exceptions import OperationFailed, OperationTimeout, RpcFailure

logger = logging.getLogger("argus.payouts")


@dataclass(frozen=True)
class WalletBalance:
    """
    Escrow wallet funds. ``available`` is spendable now; ``pending`` is
    shielded but still confirming; ``transparent`` sits on the deposit
    address until it is shielded into the pool.
    """

    available: Decimal
    pending: Decimal = Decimal("0")
    transparent: Decimal = Decimal("0")

    @property
    def shielded(self) -> Decimal:
        return self.available + self.pending

    @property
    def total(self) -> Decimal:
        return self.shielded + self.transparent


@dataclass(frozen=True)
class ShieldResult:
    """A sweep of deposit-address funds into the shielded pool."""

    operation_id: str
    amount: Decimal


@dataclass(frozen=True)
class OperationStatus:
    """State of an asynchronous send operation on the node."""

    operation_id: str
    status: str  # queued | executing | success | failed | cancelled
    tx_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.status in ("success", "failed", "cancelled")


class PayoutBackend(ABC):
    """Outbound payment rail used by the withdrawal scheduler and payout worker."""

    asset: str = ""
    # where incoming funds land, and the pool payouts are sent from
    deposit_address: Optional[str] = None
    pool_address: Optional[str] = None

    def __init__(self, poll_interval: float = 2.0, max_polls: int = 90, sleep=asyncio.sleep):
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep

    @abstractmethod
    def validate_address(self, address: str) -> bool:
        """True if ``address`` is an acceptable private payout address."""

    @abstractmethod
    async def is_chain_synced(self) -> bool:
        ...

    @abstractmethod
    async def get_balance(self) -> WalletBalance:
        ...

    @abstractmethod
    async def send_payment(self, to_address: str, amount: Decimal, memo: str = "") -> str:
        """Submit a payment and return the node's operation id."""

    @abstractmethod
    async def get_operation_status(self, operation_id: str) -> OperationStatus:
        ...

    async def wait_for_operation(self, operation_id: str) -> str:
        """
        Poll an operation until it finishes and return its transaction id.

        Bounded by ``max_polls`` × ``poll_interval``; a stuck operation fails
        with OperationTimeout instead of blocking the worker.
        """
        for _ in range(self.max_polls):
            await self._sleep(self.poll_interval)
            status = await self.get_operation_status(operation_id)
            if status.status == "success":
                if not status.tx_id:
                    raise RpcFailure(f"Operation {operation_id} succeeded without a txid")
                return status.tx_id
            if status.is_final:
                raise OperationFailed(operation_id, status.error or status.status)
        logger.warning("Operation %s did not finish after %d polls", operation_id, self.max_polls)
        raise OperationTimeout(operation_id, self.max_polls)

    async def shield_incoming(self) -> Optional[ShieldResult]:
        """
        Move funds received on the deposit address into the shielded pool.

        Returns None when there is nothing to move. Rails without a
        separate deposit address have nothing to shield.
        """
        return None

    async def aclose(self) -> None:
        """Release network resources held by the backend."""
