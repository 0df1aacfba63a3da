"""
Argus Escrow — Zcash Shielded Wallet Client
JSON-RPC 1.0 client for a zcashd node, exposed as the "zec" PayoutBackend.

Shielded (z-address) transactions hide sender, receiver and amount, so only
shielded recipients are accepted for payouts.
"""
import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import httpx

from argus.config import Settings, get_settings
from argus.encryption import mask_address
from argus.exceptions import InvalidAddress, RpcFailure, RpcTimeout
from argus.services.denominations import to_decimal
from argus.services.payout_backend import OperationStatus, PayoutBackend, ShieldResult, WalletBalance

logger = logging.getLogger("argus.zcash")

# ── Address formats ──
_TRANSPARENT = re.compile(r"^t[13][a-km-zA-HJ-NP-Z1-9]{33}$")
_SAPLING = re.compile(r"^zs1[a-z0-9]{75,80}$")
_SPROUT = re.compile(r"^zc[a-km-zA-HJ-NP-Z1-9]{93}$")
_UNIFIED = re.compile(r"^u1[a-z0-9]{100,}$")


@dataclass(frozen=True)
class AddressValidation:
    valid: bool
    type: str  # transparent | shielded | invalid
    warning: Optional[str] = None

    @property
    def is_shielded(self) -> bool:
        return self.valid and self.type == "shielded"


def validate_zcash_address(address: str) -> AddressValidation:
    """
    Classify a Zcash address.

    - t1/t3…: transparent, visible on chain like Bitcoin
    - zs1…: Sapling shielded
    - zc…: legacy Sprout shielded
    - u1…: unified, shielded by default
    """
    address = (address or "").strip()
    if _TRANSPARENT.match(address):
        return AddressValidation(
            valid=True,
            type="transparent",
            warning="Transparent address — not private. Use a shielded z-address.",
        )
    if _SAPLING.match(address):
        return AddressValidation(valid=True, type="shielded")
    if _SPROUT.match(address):
        return AddressValidation(
            valid=True,
            type="shielded",
            warning="Legacy Sprout address. Consider upgrading to Sapling (zs1…).",
        )
    if _UNIFIED.match(address):
        return AddressValidation(valid=True, type="shielded")
    return AddressValidation(valid=False, type="invalid")


class ZcashShieldedBackend(PayoutBackend):
    """
    zcashd RPC wrapper.

    Every call carries the configured timeout. Transport failures, HTTP
    errors and node-reported errors all surface as RpcFailure.
    """

    asset = "zec"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        client: Optional[httpx.AsyncClient] = None,
        **kwargs,
    ):
        self._settings = settings or get_settings()
        super().__init__(
            poll_interval=self._settings.OPERATION_POLL_INTERVAL_SECONDS,
            max_polls=self._settings.OPERATION_MAX_POLLS,
            **kwargs,
        )
        self.rpc_url = self._settings.ZCASH_RPC_URL
        self.z_address = self._settings.ZCASH_Z_ADDRESS
        self.t_address = self._settings.ZCASH_T_ADDRESS
        self.pool_address = self.z_address or None
        self.deposit_address = self.t_address or None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(self._settings.ZCASH_RPC_TIMEOUT_SECONDS),
        )
        self._auth = (self._settings.ZCASH_RPC_USER, self._settings.ZCASH_RPC_PASS)

    @property
    def is_configured(self) -> bool:
        return bool(self.rpc_url and self._settings.ZCASH_RPC_USER and self._settings.ZCASH_RPC_PASS)

    async def _rpc(self, method: str, params: Optional[list] = None) -> Any:
        if not self.is_configured:
            raise RpcFailure("Zcash node not configured")

        payload = {
            "jsonrpc": "1.0",
            "id": "argus",
            "method": method,
            "params": params or [],
        }
        try:
            response = await self._client.post(self.rpc_url, json=payload, auth=self._auth)
        except httpx.TimeoutException as exc:
            raise RpcTimeout(f"Zcash RPC {method} timed out") from exc
        except httpx.HTTPError as exc:
            raise RpcFailure(f"Zcash RPC {method} failed: {exc}") from exc

        # zcashd reports RPC errors with HTTP 500 and a JSON body
        try:
            data = response.json()
        except ValueError:
            raise RpcFailure(f"Zcash RPC error: HTTP {response.status_code}")

        error = data.get("error") if isinstance(data, dict) else None
        if error:
            raise RpcFailure(f"Zcash RPC error: {error.get('message', error)}")
        if response.status_code >= 400:
            raise RpcFailure(f"Zcash RPC error: HTTP {response.status_code}")
        return data.get("result")

    # ═══════════════════════════════════════════════════
    #  PayoutBackend
    # ═══════════════════════════════════════════════════

    def validate_address(self, address: str) -> bool:
        return validate_zcash_address(address).is_shielded

    async def is_chain_synced(self) -> bool:
        """Ready once verification progress passes ZCASH_SYNC_THRESHOLD."""
        info = await self._rpc("getblockchaininfo")
        progress = float(info.get("verificationprogress", 0))
        return progress > self._settings.ZCASH_SYNC_THRESHOLD

    async def get_balance(self) -> WalletBalance:
        """
        Escrow funds: confirmed vs. still confirming on the pool z-address,
        plus whatever waits on the deposit t-address.
        """
        minconf = self._settings.ZCASH_MIN_CONFIRMATIONS
        confirmed = to_decimal(await self._rpc("z_getbalance", [self.z_address, minconf]))
        total = to_decimal(await self._rpc("z_getbalance", [self.z_address, 0]))
        transparent = Decimal("0")
        if self.t_address:
            transparent = to_decimal(await self._rpc("z_getbalance", [self.t_address, minconf]))
        return WalletBalance(
            available=confirmed,
            pending=max(total - confirmed, Decimal("0")),
            transparent=transparent,
        )

    async def _sendmany(self, from_address: str, to_address: str, amount: Decimal, memo: str) -> str:
        recipient = {"address": to_address, "amount": float(amount)}
        if memo:
            recipient["memo"] = memo.encode("utf-8").hex()
        return await self._rpc(
            "z_sendmany",
            [
                from_address,
                [recipient],
                self._settings.ZCASH_MIN_CONFIRMATIONS,
                self._settings.ZCASH_FEE,
            ],
        )

    async def send_payment(self, to_address: str, amount: Decimal, memo: str = "") -> str:
        """z_sendmany from the escrow pool; returns the operation id."""
        if not self.validate_address(to_address):
            raise InvalidAddress("Cannot send to a non-shielded address")

        operation_id = await self._sendmany(self.z_address or "ANY_SAPLING", to_address, amount, memo)
        logger.info("Submitted %s ZEC to %s, operation %s", amount, mask_address(to_address), operation_id)
        return operation_id

    async def shield_incoming(self) -> Optional[ShieldResult]:
        """
        Sweep the deposit t-address into the pool z-address.

        One fee's worth stays behind to pay for the sweep itself.
        """
        if not self.t_address or not self.z_address:
            raise RpcFailure("Escrow deposit or pool address not configured")

        balance = await self.get_balance()
        fee = to_decimal(self._settings.ZCASH_FEE)
        if balance.transparent <= fee:
            logger.info("Nothing to shield (%s ZEC on deposit address)", balance.transparent)
            return None

        amount = balance.transparent - fee
        operation_id = await self._sendmany(self.t_address, self.z_address, amount, "Escrow shield")
        logger.info("🛡️ Shielding %s ZEC into the pool, operation %s", amount, operation_id)
        return ShieldResult(operation_id=operation_id, amount=amount)

    async def get_operation_status(self, operation_id: str) -> OperationStatus:
        results = await self._rpc("z_getoperationstatus", [[operation_id]])
        if not results:
            raise RpcFailure(f"Operation {operation_id} not found")

        op = results[0]
        return OperationStatus(
            operation_id=operation_id,
            status=op.get("status", "unknown"),
            tx_id=(op.get("result") or {}).get("txid"),
            error=(op.get("error") or {}).get("message"),
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def get_payout_backend(settings: Optional[Settings] = None) -> PayoutBackend:
    """Build the payout backend for the escrow pool."""
    return ZcashShieldedBackend(settings)
