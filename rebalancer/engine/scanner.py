"""Periodic scan over every monitored position.

Users and their positions are processed strictly one after another so a
wallet never has two transactions in flight. A failure on one position is
logged and counted; the scan moves on.
"""

import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError

from rebalancer.engine.reposition import RepositionExecutor, RepositionOutcome
from rebalancer.models import Position, User
from rebalancer.services.ledger import Ledger
from rebalancer.utils import constants
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)

_SCAN_STATUS = {
    constants.OUTCOME_REPOSITIONED: "success",
    constants.OUTCOME_COOLDOWN: "skipped",
    constants.OUTCOME_DISABLED: "skipped",
    constants.OUTCOME_DEFERRED: "skipped",
    constants.OUTCOME_ACCESS_DENIED: "skipped",
    constants.OUTCOME_STALE: "warning",
    constants.OUTCOME_FAILED: "error",
    constants.OUTCOME_CRITICAL: "error",
}


@dataclass
class ScanSummary:
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    users_processed: int = 0
    positions_scanned: int = 0
    repositioned: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    last_error: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class Scanner:
    def __init__(
        self,
        executor: RepositionExecutor,
        ledger: Ledger,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.ledger = ledger
        self._clock = clock
        self._running = False
        self.last_summary: ScanSummary | None = None
        self.scans_completed = 0
        self.scans_skipped = 0
        self._closers: list = []

    @property
    def running(self) -> bool:
        return self._running

    async def run_once(self) -> ScanSummary | None:
        """Run one full scan; returns None if a previous scan is still in flight."""
        if self._running:
            self.scans_skipped += 1
            logger.warning("Previous scan still running, skipping this tick")
            return None
        self._running = True
        try:
            return await self._scan()
        finally:
            self._running = False

    async def _scan(self) -> ScanSummary:
        summary = ScanSummary()
        started = self._clock()
        users = self.ledger.load_monitored_users()
        logger.info(f"Scan started: {len(users)} monitored users")

        for user, positions in users:
            summary.users_processed += 1
            for position in positions:
                summary.positions_scanned += 1
                await self._scan_position(summary, user, position)

        summary.duration_seconds = round(self._clock() - started, 3)
        summary.finished_at = datetime.now(timezone.utc)
        self.last_summary = summary
        self.scans_completed += 1
        logger.info(
            f"Scan finished in {summary.duration_seconds}s: users={summary.users_processed} "
            f"positions={summary.positions_scanned} repositioned={summary.repositioned} "
            f"errors={summary.errors}"
        )
        return summary

    async def _scan_position(self, summary: ScanSummary, user: User, position: Position):
        address = position.position_address
        try:
            outcome = await self.executor.process(user, position)
        except Exception as e:
            summary.errors += 1
            summary.last_error = f"{short_id(address)}: {e}"
            logger.error(f"[{short_id(address)}] Scan failed: {e}", exc_info=True)
            self._log(user, RepositionOutcome(constants.OUTCOME_FAILED, address, message=str(e)))
            return

        if outcome.action == constants.OUTCOME_REPOSITIONED:
            summary.repositioned += 1
        elif outcome.action in (constants.OUTCOME_FAILED, constants.OUTCOME_CRITICAL):
            summary.errors += 1
            summary.last_error = f"{short_id(address)}: {outcome.message}"
        if outcome.action != constants.OUTCOME_IN_RANGE:
            self._log(user, outcome)

    def _log(self, user: User, outcome: RepositionOutcome):
        check = outcome.check
        details = None
        if outcome.result is not None:
            s = outcome.result.settlement
            details = {
                "new_position": outcome.result.new_position,
                "pnl_usd": s.pnl_usd,
                "pnl_percent": s.pnl_percent,
                "base_fees": s.base_fees,
                "quote_fees": s.quote_fees,
                "gas_estimate": outcome.result.gas_estimate,
            }
        try:
            self.ledger.log_scan(
                status=_SCAN_STATUS.get(outcome.action, "error"),
                action=outcome.action,
                user_id=user.id,
                position_address=outcome.position_address,
                message=outcome.message,
                active_bin=check.active_bin if check else None,
                min_bin=check.min_bin if check else None,
                max_bin=check.max_bin if check else None,
                distance=check.distance if check else None,
                details=details,
            )
        except SQLAlchemyError as e:
            logger.warning(f"Failed to write scan log for {short_id(outcome.position_address)}: {e}")

    def status(self) -> dict:
        return {
            "scanning": self._running,
            "scans_completed": self.scans_completed,
            "scans_skipped": self.scans_skipped,
            "last_scan": self.last_summary.to_dict() if self.last_summary else None,
        }

    def add_closer(self, closer):
        self._closers.append(closer)

    async def close(self):
        for closer in self._closers:
            await closer()
        self._closers.clear()


def build_scanner(db=None) -> Scanner:
    """Wire a scanner and its collaborators from settings."""
    from solana.rpc.async_api import AsyncClient
    from solana.rpc.commitment import Confirmed

    from rebalancer.config import settings
    from rebalancer.database import engine
    from rebalancer.engine.cooldown import CooldownTracker
    from rebalancer.services.access_control import AccessControlClient
    from rebalancer.services.balance_reader import BalanceReader
    from rebalancer.services.entitlement import EntitlementGate
    from rebalancer.services.notifier import Notifier
    from rebalancer.services.pool_adapter import DlmmPoolAdapter
    from rebalancer.services.telegram_bot import get_bot

    if not settings.pool_address or not settings.base_mint:
        raise RuntimeError("RB_POOL_ADDRESS and RB_BASE_MINT must be set")

    rpc = AsyncClient(settings.rpc_url, commitment=Confirmed, timeout=settings.http_timeout_seconds)
    pool = DlmmPoolAdapter(
        rpc,
        settings.dlmm_api_url,
        settings.pool_address,
        base_decimals=settings.base_decimals,
        quote_decimals=settings.quote_decimals,
        slippage_bps=settings.slippage_bps,
        timeout=settings.http_timeout_seconds,
        resend_interval=settings.tx_resend_interval_seconds,
    )
    access = AccessControlClient(
        settings.access_control_url,
        api_key=settings.access_control_api_key,
        timeout=settings.access_control_timeout_seconds,
    )
    gate = EntitlementGate(
        access,
        status_ttl=settings.status_cache_ttl_seconds,
        settings_ttl=settings.settings_cache_ttl_seconds,
    )
    notifier = Notifier(
        get_bot(),
        throttle_seconds=settings.notice_throttle_seconds,
        base_symbol=settings.base_symbol,
        quote_symbol=settings.quote_symbol,
    )
    ledger = Ledger(db or engine)
    executor = RepositionExecutor(
        pool=pool,
        balances=BalanceReader(rpc, settings.base_mint),
        gate=gate,
        access=access,
        ledger=ledger,
        notifier=notifier,
        cooldown=CooldownTracker(settings.reposition_cooldown_seconds),
        buffer_bins=settings.range_buffer_bins,
        width_bins=settings.position_width_bins,
        settle_delay=settings.settle_delay_seconds,
        verify_delay=settings.verify_delay_seconds,
        max_attempts=settings.create_max_attempts,
        retry_base_delay=settings.retry_base_delay_seconds,
        retry_max_delay=settings.retry_max_delay_seconds,
        bin_stability_threshold=settings.bin_stability_threshold,
        bin_stability_pause=settings.bin_stability_pause_seconds,
        read_attempts=settings.position_read_attempts,
        high_urgency_distance=settings.high_urgency_distance_bins,
        gas_estimate=settings.reposition_gas_estimate_sol,
    )
    scanner = Scanner(executor, ledger)
    scanner.add_closer(pool.close)
    scanner.add_closer(access.close)
    scanner.add_closer(rpc.close)
    return scanner
