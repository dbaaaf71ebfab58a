"""Exception types raised along the reposition path."""

from rebalancer.utils.constants import TRANSIENT_ERROR_MARKERS

FUNDS_IN_WALLET_ACTION = "your funds are in your wallet, create a new position manually."


class RebalancerError(Exception):
    """Base class for engine errors."""


class PoolAdapterError(RebalancerError):
    """The pool gateway or RPC node rejected a request."""

    def __init__(self, message: str, logs: list[str] | None = None):
        super().__init__(message)
        self.logs = logs or []


class TransactionFailedError(PoolAdapterError):
    """A submitted transaction landed with an error status."""


class TransactionExpiredError(PoolAdapterError):
    """The blockhash expired before the transaction was confirmed."""

    def __init__(self, signature: str, last_valid_block_height: int):
        super().__init__(
            f"Transaction expired: block height exceeded "
            f"(signature={signature}, last_valid_block_height={last_valid_block_height})"
        )
        self.signature = signature


class ConfirmationUnknownError(PoolAdapterError):
    """The RPC node stopped answering; the transaction may or may not have landed."""

    def __init__(self, signature: str, cause: Exception):
        super().__init__(f"Lost contact with RPC confirming {signature}: {cause}")
        self.signature = signature


class PartialCloseError(PoolAdapterError):
    """A multi-transaction close stopped after some transactions had already landed."""

    def __init__(self, position: str, landed: list[str], total: int, cause: PoolAdapterError):
        super().__init__(
            f"Close of {position} stopped after {len(landed)} of {total} transactions: {cause}",
            logs=cause.logs,
        )
        self.position = position
        self.landed = list(landed)
        self.total = total


class PositionNotFoundError(PoolAdapterError, LookupError):
    """The position does not exist on-chain or is not tracked in the ledger."""


class AccessControlError(RebalancerError):
    """The remote access-control service failed or returned garbage."""


class CriticalRepositionError(RebalancerError):
    """Funds left unpositioned or a position left empty; needs a human."""

    def __init__(self, detail: str, action: str = FUNDS_IN_WALLET_ACTION):
        super().__init__(f"CRITICAL: {detail} Manual action required: {action}")
        self.detail = detail


class PersistenceAfterChainError(RebalancerError):
    """On-chain actions succeeded but the database write did not."""


def is_transient_error(exc: BaseException) -> bool:
    """True for slippage, price-move and stale-blockhash failures."""
    text = str(exc).lower()
    logs = getattr(exc, "logs", None) or []
    haystack = text + "\n" + "\n".join(logs).lower()
    return any(marker in haystack for marker in TRANSIENT_ERROR_MARKERS)
