"""Settlement math for a closed position.

Pure functions only; persistence lives in ``rebalancer.services.ledger``.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Settlement:
    """Realized result of closing one position."""

    base_returned: float
    quote_returned: float
    base_fees: float
    quote_fees: float
    exit_price: float
    exit_bin: int
    entry_value_usd: float
    exit_value_usd: float
    pnl_usd: float
    pnl_percent: float


@dataclass(frozen=True)
class RepositionResult:
    """What the executor hands to the notifier after a successful reposition."""

    old_position: str
    new_position: str
    settlement: Settlement
    entry_price: float
    entry_bin: int
    min_bin: int
    max_bin: int
    base_amount: float
    gas_estimate: float
    close_signatures: tuple[str, ...] = ()
    create_signature: str = ""


def compute_pnl(
    base_deposited: float,
    entry_price: float,
    base_returned: float,
    quote_returned: float,
    exit_price: float,
) -> tuple[float, float, float, float]:
    """Return (entry_value, exit_value, pnl_usd, pnl_percent).

    The quote leg is added at face value, matching how the position was
    funded (base only at entry).
    """
    entry_value = base_deposited * entry_price
    exit_value = base_returned * exit_price + quote_returned
    pnl_usd = exit_value - entry_value
    pnl_percent = pnl_usd / entry_value * 100 if entry_value > 0 else 0.0
    return entry_value, exit_value, pnl_usd, pnl_percent


def compute_fees(deposited: float, returned: float) -> float:
    """Fees are the positive excess of what came back over what went in."""
    return max(0.0, returned - deposited)


def compute_settlement(
    base_deposited: float,
    quote_deposited: float,
    entry_price: float,
    base_returned: float,
    quote_returned: float,
    exit_price: float,
    exit_bin: int,
) -> Settlement:
    entry_value, exit_value, pnl_usd, pnl_percent = compute_pnl(
        base_deposited, entry_price, base_returned, quote_returned, exit_price
    )
    return Settlement(
        base_returned=base_returned,
        quote_returned=quote_returned,
        base_fees=compute_fees(base_deposited, base_returned),
        quote_fees=compute_fees(quote_deposited, quote_returned),
        exit_price=exit_price,
        exit_bin=exit_bin,
        entry_value_usd=entry_value,
        exit_value_usd=exit_value,
        pnl_usd=pnl_usd,
        pnl_percent=pnl_percent,
    )


def returned_amount(before: float, after: float) -> float:
    """Wallet delta across a close; other wallet activity can only make it an estimate."""
    return max(0.0, after - before)


def estimate_gas(
    quote_before_close: float,
    quote_released: float,
    quote_after_create: float,
    quote_deposited: float,
) -> float:
    """Approximate SOL spent on fees and rent across close + create.

    Derived from balance deltas, so concurrent wallet activity skews it;
    clamped at zero and only ever reported as an estimate.
    """
    spent = quote_before_close + quote_released - quote_after_create - quote_deposited
    return max(0.0, spent)
