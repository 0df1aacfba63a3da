"""
Argus Escrow — Domain Exceptions
Every escrow/payout failure carries a stable code used by the API error handler.
"""
from decimal import Decimal


class ArgusError(Exception):
    """Base exception for all escrow and payout errors."""

    def __init__(self, message: str, code: str | None = None):
        self.message = message
        self.code = code or self.__class__.__name__
        super().__init__(self.message)


# ── Request-time validation (raised before any state change) ──


class InvalidAddress(ArgusError):
    """Recipient is not a syntactically valid shielded address."""

    def __init__(self, message: str = "Invalid shielded address"):
        super().__init__(message, code="INVALID_ADDRESS")


class InsufficientBalance(ArgusError):
    """Debit exceeds the source's escrow balance."""

    def __init__(self, available: Decimal, requested: Decimal):
        self.available = available
        self.requested = requested
        super().__init__(
            f"Insufficient balance. Available: {available} ZEC, requested: {requested} ZEC",
            code="INSUFFICIENT_BALANCE",
        )


class DuplicateRequest(ArgusError):
    """The source already has a withdrawal in flight."""

    def __init__(self, message: str = "A withdrawal is already in progress for this source"):
        super().__init__(message, code="DUPLICATE_REQUEST")


class AmountTooSmall(ArgusError):
    """Requested amount cannot be represented by standard denominations."""

    def __init__(self, message: str):
        super().__init__(message, code="AMOUNT_TOO_SMALL")


class WithdrawalNotFound(ArgusError):
    def __init__(self, withdrawal_id):
        super().__init__(f"Withdrawal {withdrawal_id} not found", code="WITHDRAWAL_NOT_FOUND")


# ── Worker-side conditions ──


class ChainNotReady(ArgusError):
    """Shielded-chain node is not synced; safe to retry next cycle."""

    def __init__(self, message: str = "Blockchain not synced"):
        super().__init__(message, code="CHAIN_NOT_READY")


class InsufficientPoolSize(ArgusError):
    """Too few due entries to form an anonymity set; safe to retry next cycle."""

    def __init__(self, due: int, minimum: int):
        self.due = due
        self.minimum = minimum
        super().__init__(
            f"Only {due} due withdrawals, waiting for at least {minimum}",
            code="INSUFFICIENT_POOL_SIZE",
        )


class RpcFailure(ArgusError):
    """Shielded wallet RPC call failed (transport, HTTP or node error)."""

    def __init__(self, message: str):
        super().__init__(message, code="RPC_FAILURE")


class RpcTimeout(RpcFailure):
    """No answer in time; the node may still have acted on the call."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "RPC_TIMEOUT"


class OperationTimeout(RpcTimeout):
    """An async wallet operation did not finish within the polling budget."""

    def __init__(self, operation_id: str, polls: int):
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} still pending after {polls} polls")
        self.code = "OPERATION_TIMEOUT"


class OperationFailed(RpcFailure):
    """The node reports the operation finished without sending anything."""

    def __init__(self, operation_id: str, reason: str):
        self.operation_id = operation_id
        super().__init__(f"Transaction failed: {reason}")
        self.code = "OPERATION_FAILED"


class InvalidEntryState(ArgusError):
    """Queue entry is not in a state that allows the requested transition."""

    def __init__(self, message: str):
        super().__init__(message, code="INVALID_ENTRY_STATE")
