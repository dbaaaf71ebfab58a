"""Reposition executor: one position, one pass through the state machine.

    range check -> cooldown -> entitlement -> close -> settle -> create
    -> verify -> reconcile

Before the close lands nothing has moved, so failures there are ordinary
errors. After it lands the user's funds sit unpositioned in their wallet and
any failure to open the replacement is CRITICAL: reported once, never
remediated automatically.

A close that raises is not taken at its word. The position is re-read: if it
is gone the close landed and the pass carries on; if it is still there but the
confirmation was lost, the address is held as unconfirmed until a later scan
settles it one way or the other.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from solders.keypair import Keypair
from sqlalchemy.exc import SQLAlchemyError

from rebalancer.engine.cooldown import CooldownTracker
from rebalancer.engine.errors import (
    ConfirmationUnknownError,
    CriticalRepositionError,
    PartialCloseError,
    PersistenceAfterChainError,
    PoolAdapterError,
    AccessControlError,
    is_transient_error,
)
from rebalancer.engine.range_detector import RangeCheck, centered_range, check_range, urgency
from rebalancer.engine.settlement import (
    RepositionResult,
    Settlement,
    compute_settlement,
    estimate_gas,
    returned_amount,
)
from rebalancer.models import Position, User
from rebalancer.schemas.access import AutomationSettings, ExecutionRecord
from rebalancer.schemas.pool import ActiveBin, CreatedPosition, PositionSnapshot
from rebalancer.services.access_control import AccessControlClient
from rebalancer.services.balance_reader import BalanceReader
from rebalancer.services.entitlement import AccessDecision, AccessMode, DenyReason, EntitlementGate
from rebalancer.services.ledger import Ledger
from rebalancer.services.notifier import Notifier
from rebalancer.services.pool_adapter import DlmmPoolAdapter
from rebalancer.services.wallet import WalletError, load_keypair
from rebalancer.utils import constants
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


@dataclass
class RepositionOutcome:
    action: str
    position_address: str
    check: RangeCheck | None = None
    new_position: str | None = None
    message: str | None = None
    result: RepositionResult | None = None


class RepositionExecutor:
    def __init__(
        self,
        pool: DlmmPoolAdapter,
        balances: BalanceReader,
        gate: EntitlementGate,
        access: AccessControlClient,
        ledger: Ledger,
        notifier: Notifier,
        cooldown: CooldownTracker,
        buffer_bins: int = 2,
        width_bins: int = 68,
        settle_delay: float = 5.0,
        verify_delay: float = 3.0,
        max_attempts: int = 5,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 8.0,
        bin_stability_threshold: int = 2,
        bin_stability_pause: float = 3.0,
        read_attempts: int = 3,
        high_urgency_distance: int = 10,
        gas_estimate: float = 0.001,
        keypair_loader: Callable[[User], Keypair] = load_keypair,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.pool = pool
        self.balances = balances
        self.gate = gate
        self.access = access
        self.ledger = ledger
        self.notifier = notifier
        self.cooldown = cooldown
        self.buffer_bins = buffer_bins
        self.width_bins = width_bins
        self.settle_delay = settle_delay
        self.verify_delay = verify_delay
        self.max_attempts = max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.bin_stability_threshold = bin_stability_threshold
        self.bin_stability_pause = bin_stability_pause
        self.read_attempts = read_attempts
        self.high_urgency_distance = high_urgency_distance
        self.gas_estimate = gas_estimate
        self.keypair_loader = keypair_loader
        self._sleep = sleep
        # Positions whose close was sent but never confirmed either way
        self._unconfirmed_closes: set[str] = set()

    async def process(self, user: User, position: Position) -> RepositionOutcome:
        """Check one position and reposition it if it has drifted out of range."""
        address = position.position_address
        tag = f"[{short_id(address)}]"

        snapshot = await self.pool.get_position(address)
        if snapshot is None:
            self.ledger.close_stale_position(address)
            if address in self._unconfirmed_closes:
                return await self._unconfirmed_close_landed(user, address)
            return RepositionOutcome(constants.OUTCOME_STALE, address, message="position not found on-chain")
        if address in self._unconfirmed_closes and self.cooldown.can_reposition(address):
            # Still there a full cooldown later: the close never landed
            logger.info(f"{tag} Unconfirmed close did not land, position untouched")
            self._unconfirmed_closes.discard(address)
        if not snapshot.bins:
            logger.warning(f"{tag} Position holds no bins, skipping")
            return RepositionOutcome(constants.OUTCOME_FAILED, address, message="position holds no bins")

        active = await self.pool.get_active_bin()
        check = check_range(snapshot.min_bin, snapshot.max_bin, active.bin_id, self.buffer_bins)
        self.ledger.touch_position(address)
        logger.debug(f"{tag} {check.describe()}")
        if not check.out_of_range:
            return RepositionOutcome(constants.OUTCOME_IN_RANGE, address, check=check)

        logger.info(f"{tag} OUT OF RANGE: {check.describe()}")
        if not self.cooldown.can_reposition(address):
            return RepositionOutcome(constants.OUTCOME_COOLDOWN, address, check=check)

        decision = await self.gate.verify_access(str(user.telegram_id))
        if not decision.granted:
            if decision.silent:
                return RepositionOutcome(constants.OUTCOME_DISABLED, address, check=check)
            await self._notify_denied(user, address, decision)
            return RepositionOutcome(
                constants.OUTCOME_ACCESS_DENIED, address, check=check, message=decision.reason.value
            )

        reason = self._deferral_reason(check, decision.settings)
        if reason:
            logger.info(f"{tag} Deferred by automation settings: {reason}")
            return RepositionOutcome(constants.OUTCOME_DEFERRED, address, check=check, message=reason)

        outcome = await self._reposition(user, position, snapshot, active, decision)
        outcome.check = check
        return outcome

    def _deferral_reason(self, check: RangeCheck, automation: AutomationSettings | None) -> str | None:
        """Why the user's urgency or gas limits hold this reposition back, if they do."""
        if automation is None:
            return None
        levels = constants.URGENCY_LEVELS
        required = automation.urgency_threshold.lower()
        if required not in levels:
            required = constants.DEFAULT_URGENCY
        level = urgency(check, self.high_urgency_distance)
        if levels[level] < levels[required]:
            return f"urgency {level} ({check.distance} bins out) is below the {required} threshold"
        if automation.max_gas_cost_sol is not None and self.gas_estimate > automation.max_gas_cost_sol:
            return (
                f"estimated gas {self.gas_estimate:.6f} SOL exceeds the "
                f"{automation.max_gas_cost_sol:.6f} SOL limit"
            )
        return None

    async def _unconfirmed_close_landed(self, user: User, address: str) -> RepositionOutcome:
        self._unconfirmed_closes.discard(address)
        critical = CriticalRepositionError(
            f"Old position {address} was closed on-chain after its close could not be confirmed, "
            "so no replacement position was created."
        )
        logger.critical(f"[{short_id(address)}] {critical}")
        await self.notifier.error(user.telegram_id, address, str(critical))
        return RepositionOutcome(constants.OUTCOME_CRITICAL, address, message=str(critical))

    async def _notify_denied(self, user: User, address: str, decision: AccessDecision):
        chat_id = user.telegram_id
        if decision.reason is DenyReason.NO_LINKED_WALLET:
            await self.notifier.subscription_required(chat_id, address, decision.detail)
        elif decision.reason is DenyReason.CHECK_FAILED:
            await self.notifier.subscription_check_failed(chat_id, address, decision.detail)
        else:
            await self.notifier.no_subscription(chat_id, address)

    async def _reposition(
        self,
        user: User,
        position: Position,
        snapshot: PositionSnapshot,
        active: ActiveBin,
        decision: AccessDecision,
    ) -> RepositionOutcome:
        address = position.position_address
        tag = f"[{short_id(address)}]"
        chat_id = user.telegram_id

        try:
            keypair = self.keypair_loader(user)
        except WalletError as e:
            logger.error(f"{tag} Cannot sign for user {user.id}: {e}")
            return RepositionOutcome(constants.OUTCOME_FAILED, address, message=str(e))

        await self.notifier.starting(chat_id, address, snapshot.base_total, snapshot.quote_total)

        # Closing
        pre = await self.balances.get_balance(user.wallet_address)
        self.cooldown.record(address)
        partial: CriticalRepositionError | None = None
        recovered = False
        try:
            close_signatures = await self.pool.remove_liquidity_and_close(keypair, snapshot)
        except PartialCloseError as e:
            # Some liquidity already left the position; never retried
            logger.critical(f"{tag} {e}")
            partial = CriticalRepositionError(
                f"Old position {address} was only partly closed ({len(e.landed)} of {e.total} "
                f"transactions landed) and no replacement was created.",
                action="withdraw what is left in the old position, then create a new position manually.",
            )
        except PoolAdapterError as e:
            outcome = await self._close_failed(user, address, decision, e)
            if outcome is not None:
                return outcome
            close_signatures = []
            recovered = True

        # Settling: the recorded deposit is stale once fees and slippage apply
        await self._sleep(self.settle_delay)
        settlement = self._fallback_settlement(position, active)
        try:
            after_close = await self.balances.get_balance(user.wallet_address)
            settlement = compute_settlement(
                base_deposited=position.base_amount,
                quote_deposited=position.quote_amount,
                entry_price=position.entry_price,
                base_returned=returned_amount(pre.base, after_close.base),
                quote_returned=returned_amount(pre.quote, after_close.quote),
                exit_price=active.price,
                exit_bin=active.bin_id,
            )
            logger.info(
                f"{tag} Closed: returned {settlement.base_returned} base + {settlement.quote_returned} quote, "
                f"wallet now {after_close.base} base"
            )
            if partial is not None:
                raise partial
            if recovered and settlement.base_returned <= 0 and settlement.quote_returned <= 0:
                # Gone before our close reached it; nothing of ours to redeploy
                logger.warning(f"{tag} Position disappeared without returning funds to the wallet")
                self.ledger.close_stale_position(address)
                return RepositionOutcome(
                    constants.OUTCOME_STALE, address, message="position closed outside the rebalancer"
                )
            if after_close.base <= 0:
                raise CriticalRepositionError("No base balance available after closing the old position.")

            # Creating + verifying
            created, entry = await self._create_with_retry(keypair, after_close.base, active.bin_id)
            verify_warning = await self._verify(created)
        except Exception as e:
            return await self._fail_critical(user, position, settlement, decision, partial or e)

        # Reconciling
        gas = 0.0
        try:
            post = await self.balances.get_balance(user.wallet_address)
            gas = estimate_gas(pre.quote, snapshot.quote_total, post.quote, created.quote_amount)
        except PoolAdapterError as e:
            logger.warning(f"{tag} Could not read balance for gas estimate: {e}")

        result = RepositionResult(
            old_position=address,
            new_position=created.address,
            settlement=settlement,
            entry_price=entry.price,
            entry_bin=entry.bin_id,
            min_bin=created.min_bin,
            max_bin=created.max_bin,
            base_amount=created.base_amount,
            gas_estimate=gas,
            close_signatures=tuple(close_signatures),
            create_signature=created.signature,
        )

        problems = [verify_warning] if verify_warning else []
        try:
            self._persist(position, settlement, created, entry)
        except PersistenceAfterChainError as e:
            logger.critical(f"{tag} {e}", exc_info=True)
            problems.append(str(e))
        message = "; ".join(problems) or None

        if gas > 0:
            self.gas_estimate = gas
        self.cooldown.record(created.address)
        await self._report_execution(decision, created.address, True, gas, None)
        if decision.mode is AccessMode.CREDITS:
            await self._charge_credit(decision, address, created.address)
        await self.notifier.success(chat_id, result, note=verify_warning)

        logger.info(
            f"{tag} Repositioned -> {short_id(created.address)} bins {created.min_bin}..{created.max_bin}, "
            f"pnl=${settlement.pnl_usd:.2f} ({settlement.pnl_percent:.2f}%), gas~{gas:.6f}"
        )
        return RepositionOutcome(
            constants.OUTCOME_REPOSITIONED,
            address,
            new_position=created.address,
            message=message,
            result=result,
        )

    async def _create_with_retry(
        self, keypair: Keypair, base_amount: float, reference_bin: int
    ) -> tuple[CreatedPosition, ActiveBin]:
        """Open the replacement position, retrying transient failures with backoff."""
        last_bin = reference_bin
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                active = await self.pool.get_active_bin()
            except PoolAdapterError as e:
                last_error = e
                logger.warning(f"Create attempt {attempt}: active bin read failed: {e}")
                await self._sleep(self._backoff(attempt))
                continue

            if abs(active.bin_id - last_bin) > self.bin_stability_threshold:
                logger.warning(
                    f"Create attempt {attempt}: active bin moved {last_bin} -> {active.bin_id}, "
                    f"waiting {self.bin_stability_pause}s for it to settle"
                )
                last_bin = active.bin_id
                last_error = PoolAdapterError("price moved: active bin unstable")
                await self._sleep(self.bin_stability_pause)
                continue

            last_bin = active.bin_id
            min_bin, max_bin = centered_range(active.bin_id, self.width_bins)
            try:
                created = await self.pool.add_liquidity(keypair, base_amount, min_bin, max_bin)
            except PoolAdapterError as e:
                last_error = e
                if not is_transient_error(e) or attempt == self.max_attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning(f"Create attempt {attempt}/{self.max_attempts} failed ({e}), retrying in {delay}s")
                await self._sleep(delay)
                continue

            logger.info(f"Created {short_id(created.address)} on attempt {attempt}")
            return created, active

        raise PoolAdapterError(f"Position creation failed after {self.max_attempts} attempts: {last_error}")

    def _backoff(self, attempt: int) -> float:
        return min(self.retry_base_delay * 2 ** (attempt - 1), self.retry_max_delay)

    async def _read_position(self, address: str) -> PositionSnapshot | None:
        """get_position with bounded retries on gateway errors."""
        for attempt in range(1, self.read_attempts + 1):
            try:
                return await self.pool.get_position(address)
            except PoolAdapterError as e:
                if attempt >= self.read_attempts:
                    raise
                delay = self._backoff(attempt)
                logger.warning(f"[{short_id(address)}] Position read failed ({e}), retrying in {delay}s")
                await self._sleep(delay)
        return None

    async def _verify(self, created: CreatedPosition) -> str | None:
        """Confirm the new position holds liquidity.

        Returns a warning when it could not be read at all; the position is
        tracked regardless and the next scan reads it again.
        """
        await self._sleep(self.verify_delay)
        try:
            snapshot = await self._read_position(created.address)
        except PoolAdapterError as e:
            warning = (
                f"New position {created.address} could not be verified ({e}); "
                "it is tracked and will be checked on the next scan."
            )
            logger.warning(f"[{short_id(created.address)}] {warning}")
            return warning
        if snapshot is None or snapshot.total_liquidity <= 0:
            raise CriticalRepositionError(
                f"New position {created.address} was created but holds no liquidity."
            )
        return None

    async def _close_failed(
        self, user: User, address: str, decision: AccessDecision, exc: PoolAdapterError
    ) -> RepositionOutcome | None:
        """Work out what a close that raised actually did.

        Returns None when the position is gone on-chain, so the close landed
        and the reposition carries on from settling.
        """
        tag = f"[{short_id(address)}]"
        try:
            current = await self._read_position(address)
        except PoolAdapterError as e:
            logger.error(f"{tag} Close failed ({exc}) and the position could not be re-read: {e}")
            return await self._close_unconfirmed(user, address, decision, exc)

        if current is None:
            logger.warning(f"{tag} Close raised ({exc}) but the position is gone on-chain, continuing")
            return None
        if isinstance(exc, ConfirmationUnknownError):
            return await self._close_unconfirmed(user, address, decision, exc)

        logger.error(f"{tag} Close failed, position untouched: {exc}")
        await self._report_execution(decision, address, False, 0.0, str(exc))
        await self.notifier.error(user.telegram_id, address, str(exc))
        return RepositionOutcome(constants.OUTCOME_FAILED, address, message=str(exc))

    async def _close_unconfirmed(
        self, user: User, address: str, decision: AccessDecision, exc: PoolAdapterError
    ) -> RepositionOutcome:
        self._unconfirmed_closes.add(address)
        message = (
            f"Close of position {address} could not be confirmed ({exc}). "
            "It will be checked again on the next scan."
        )
        logger.error(f"[{short_id(address)}] {message}")
        await self._report_execution(decision, address, False, 0.0, message)
        await self.notifier.error(user.telegram_id, address, message)
        return RepositionOutcome(constants.OUTCOME_FAILED, address, message=message)

    async def _fail_critical(
        self,
        user: User,
        position: Position,
        settlement: Settlement,
        decision: AccessDecision,
        exc: Exception,
    ) -> RepositionOutcome:
        address = position.position_address
        tag = f"[{short_id(address)}]"
        if isinstance(exc, CriticalRepositionError):
            critical = exc
        else:
            critical = CriticalRepositionError(
                f"Old position was closed but the new position could not be created ({exc})."
            )
        logger.critical(f"{tag} {critical}", exc_info=exc)

        try:
            self.ledger.record_failed_reposition(address, settlement)
        except (SQLAlchemyError, LookupError) as e:
            logger.critical(f"{tag} Could not mark closed position in the database: {e}", exc_info=True)

        await self._report_execution(decision, address, False, 0.0, str(critical))
        await self.notifier.error(user.telegram_id, address, str(critical))
        return RepositionOutcome(constants.OUTCOME_CRITICAL, address, message=str(critical))

    @staticmethod
    def _fallback_settlement(position: Position, active: ActiveBin) -> Settlement:
        """Settlement used when the post-close balance could not be read."""
        return compute_settlement(
            base_deposited=position.base_amount,
            quote_deposited=position.quote_amount,
            entry_price=position.entry_price,
            base_returned=0.0,
            quote_returned=0.0,
            exit_price=active.price,
            exit_bin=active.bin_id,
        )

    def _persist(self, position: Position, settlement: Settlement, created: CreatedPosition, entry: ActiveBin):
        try:
            self.ledger.record_reposition(
                position.position_address,
                settlement,
                created,
                pool_address=position.pool_address,
                entry_price=entry.price,
                entry_bin=entry.bin_id,
            )
        except (SQLAlchemyError, LookupError) as e:
            raise PersistenceAfterChainError(
                f"Reposition {position.position_address} -> {created.address} succeeded on-chain "
                f"but was not recorded; manual reconciliation required: {e}"
            ) from e

    async def _report_execution(
        self, decision: AccessDecision, position_address: str, success: bool, gas: float, error: str | None
    ):
        if not decision.linked_address or decision.mode is None:
            return
        record = ExecutionRecord(
            wallet_address=decision.linked_address,
            position_address=position_address,
            success=success,
            gas_cost_sol=gas,
            mode=decision.mode.value,
            error=error,
        )
        try:
            await self.access.record_execution(record)
        except AccessControlError as e:
            logger.warning(f"[{short_id(position_address)}] Failed to record execution: {e}")

    async def _charge_credit(self, decision: AccessDecision, old_address: str, new_address: str):
        try:
            await self.access.use_credits(
                decision.linked_address,
                constants.CREDITS_PER_REPOSITION,
                new_address,
                f"Auto-reposition {short_id(old_address)} -> {short_id(new_address)}",
            )
        except AccessControlError as e:
            # Not retried: a timeout may still have charged the credit
            logger.error(f"[{short_id(old_address)}] Credit deduction failed: {e}")
        finally:
            self.gate.invalidate_credits(decision.linked_address)
