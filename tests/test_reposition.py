"""Tests for the reposition executor state machine."""

from unittest.mock import ANY, AsyncMock, MagicMock

import pytest
from solders.keypair import Keypair

from rebalancer.engine.cooldown import CooldownTracker
from rebalancer.engine.errors import ConfirmationUnknownError, PartialCloseError, PoolAdapterError
from rebalancer.engine.reposition import RepositionExecutor
from rebalancer.schemas.access import AutomationSettings
from rebalancer.schemas.pool import (
    ActiveBin,
    CreatedPosition,
    PositionBin,
    PositionSnapshot,
    WalletBalance,
)
from rebalancer.services.entitlement import AccessDecision, AccessMode, DenyReason
from rebalancer.services.notifier import Notifier
from rebalancer.utils import constants

OLD = "OldPos1111111111111111111111111111111111111"
NEW = "NewPos2222222222222222222222222222222222222"


def _snapshot(address=OLD, lo=100, hi=168, base=1.0):
    half = base / 2
    return PositionSnapshot(
        address=address,
        bins=(PositionBin(bin_id=lo, base_amount=half), PositionBin(bin_id=hi, base_amount=half)),
    )


def _granted(mode=AccessMode.SUBSCRIPTION):
    return AccessDecision(True, mode=mode, linked_address="Linked111", settings=AutomationSettings())


class Harness:
    """Executor wired to fakes plus a real ledger."""

    def __init__(self, ledger, user, clock):
        self.ledger = ledger
        self.user = user
        self.position = ledger.create_position(
            user_id=user.id,
            position_address=OLD,
            pool_address="Pool1111",
            base_amount=1.0,
            quote_amount=0.0,
            entry_price=50_000.0,
            entry_bin=134,
        )

        self.pool = MagicMock()
        self.pool.get_position = AsyncMock(side_effect=[_snapshot(), _snapshot(NEW, 56, 124)])
        self.pool.get_active_bin = AsyncMock(return_value=ActiveBin(bin_id=90, price=51_000.0))
        self.pool.remove_liquidity_and_close = AsyncMock(return_value=["close-sig"])
        self.pool.add_liquidity = AsyncMock(return_value=CreatedPosition(
            address=NEW, signature="create-sig", min_bin=56, max_bin=124, base_amount=1.0,
        ))

        self.balances = MagicMock()
        self.balances.get_balance = AsyncMock(side_effect=[
            WalletBalance(base=0.0, quote=1.0),    # before close
            WalletBalance(base=1.0, quote=1.05),   # after close
            WalletBalance(base=0.0, quote=1.03),   # after create
        ])

        self.gate = MagicMock()
        self.gate.verify_access = AsyncMock(return_value=_granted())

        self.access = MagicMock()
        self.access.record_execution = AsyncMock()
        self.access.use_credits = AsyncMock()

        self.transport = MagicMock()
        self.transport.send_message = AsyncMock()
        self.notifier = Notifier(self.transport, clock=clock)
        self.cooldown = CooldownTracker(300, clock=clock)
        self.sleep = AsyncMock()

        self.executor = RepositionExecutor(
            pool=self.pool,
            balances=self.balances,
            gate=self.gate,
            access=self.access,
            ledger=ledger,
            notifier=self.notifier,
            cooldown=self.cooldown,
            keypair_loader=lambda user: Keypair(),
            sleep=self.sleep,
        )

    async def run(self):
        return await self.executor.process(self.user, self.position)

    def messages(self) -> list[str]:
        return [call.args[1] for call in self.transport.send_message.await_args_list]


@pytest.fixture
def harness(ledger, user, clock):
    return Harness(ledger, user, clock)


# ---------------------------------------------------------------------------
# 1. Steady state and early exits
# ---------------------------------------------------------------------------

class TestEarlyExits:
    @pytest.mark.asyncio
    async def test_in_range_is_a_no_op(self, harness):
        harness.pool.get_active_bin.return_value = ActiveBin(bin_id=99, price=50_000.0)
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_IN_RANGE
        harness.gate.verify_access.assert_not_awaited()
        harness.pool.remove_liquidity_and_close.assert_not_awaited()
        assert harness.messages() == []
        assert harness.ledger.get_position(OLD).last_checked is not None

    @pytest.mark.asyncio
    async def test_cooldown_skips_silently(self, harness):
        harness.cooldown.record(OLD)
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_COOLDOWN
        harness.gate.verify_access.assert_not_awaited()
        assert harness.messages() == []

    @pytest.mark.asyncio
    async def test_denied_notifies_throttled(self, harness):
        harness.gate.verify_access.return_value = AccessDecision(
            False, linked_address="Linked111", reason=DenyReason.NO_SUBSCRIPTION
        )
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = _snapshot()

        first = await harness.run()
        second = await harness.run()

        assert first.action == second.action == constants.OUTCOME_ACCESS_DENIED
        assert len(harness.messages()) == 1
        assert "No Active Subscription" in harness.messages()[0]
        harness.pool.remove_liquidity_and_close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_linked_wallet_asks_for_subscription(self, harness):
        harness.gate.verify_access.return_value = AccessDecision(
            False, reason=DenyReason.NO_LINKED_WALLET, detail="Link your wallet"
        )
        await harness.run()
        assert "Subscription Required" in harness.messages()[0]

    @pytest.mark.asyncio
    async def test_disabled_automation_is_silent(self, harness):
        harness.gate.verify_access.return_value = AccessDecision(
            False, mode=AccessMode.SUBSCRIPTION, reason=DenyReason.AUTOMATION_DISABLED
        )
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_DISABLED
        assert harness.messages() == []

    @pytest.mark.asyncio
    async def test_missing_on_chain_position_is_closed_as_stale(self, harness):
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = None
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_STALE
        assert harness.ledger.get_position(OLD).is_active is False


# ---------------------------------------------------------------------------
# 2. Successful reposition
# ---------------------------------------------------------------------------

class TestReposition:
    @pytest.mark.asyncio
    async def test_full_cycle(self, harness):
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert outcome.new_position == NEW
        harness.pool.add_liquidity.assert_awaited_once_with(ANY, 1.0, 56, 124)

        old = harness.ledger.get_position(OLD)
        assert old.is_active is False
        assert old.pnl_usd == pytest.approx(1000.05)
        assert old.quote_fees == pytest.approx(0.05)
        new = harness.ledger.get_position(NEW)
        assert new.is_active is True
        assert new.entry_bin == 90
        assert harness.ledger.position_stats(harness.user.id)["repositions"] == 1

        assert outcome.result.gas_estimate >= 0
        record = harness.access.record_execution.await_args.args[0]
        assert record.success is True
        assert record.position_address == NEW
        harness.access.use_credits.assert_not_awaited()

        messages = harness.messages()
        assert len(messages) == 2
        assert "Out of Range" in messages[0]
        assert "Successfully Repositioned" in messages[1]

        assert harness.cooldown.can_reposition(OLD) is False
        assert harness.cooldown.can_reposition(NEW) is False

    @pytest.mark.asyncio
    async def test_settle_delay_precedes_balance_reread(self, harness):
        await harness.run()
        delays = [call.args[0] for call in harness.sleep.await_args_list]
        assert delays[0] == harness.executor.settle_delay
        assert harness.executor.verify_delay in delays

    @pytest.mark.asyncio
    async def test_credits_mode_deducts_once_and_invalidates(self, harness):
        harness.gate.verify_access.return_value = _granted(AccessMode.CREDITS)
        await harness.run()

        harness.access.use_credits.assert_awaited_once()
        args = harness.access.use_credits.await_args.args
        assert args[0] == "Linked111"
        assert args[1] == 1
        harness.gate.invalidate_credits.assert_called_once_with("Linked111")

    @pytest.mark.asyncio
    async def test_transient_create_failure_is_retried(self, harness):
        created = harness.pool.add_liquidity.return_value
        harness.pool.add_liquidity.side_effect = [
            PoolAdapterError("simulation failed", logs=["ExceededBinSlippageTolerance"]),
            created,
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert harness.pool.add_liquidity.await_count == 2
        assert 1.0 in [call.args[0] for call in harness.sleep.await_args_list]

    @pytest.mark.asyncio
    async def test_unstable_active_bin_pauses_before_create(self, harness):
        harness.pool.get_active_bin.side_effect = [
            ActiveBin(bin_id=90, price=51_000.0),   # range check
            ActiveBin(bin_id=95, price=51_100.0),   # moved 5 bins: pause
            ActiveBin(bin_id=95, price=51_100.0),   # stable
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        harness.pool.add_liquidity.assert_awaited_once_with(ANY, 1.0, 61, 129)
        assert harness.executor.bin_stability_pause in [c.args[0] for c in harness.sleep.await_args_list]

    @pytest.mark.asyncio
    async def test_close_failure_leaves_position_untouched(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = PoolAdapterError("send failed")
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = _snapshot()
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_FAILED
        assert harness.ledger.get_position(OLD).is_active is True
        harness.pool.add_liquidity.assert_not_awaited()
        assert harness.cooldown.can_reposition(OLD) is False
        assert "Repositioning Failed" in harness.messages()[-1]

    @pytest.mark.asyncio
    async def test_close_error_with_position_gone_carries_on(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = PoolAdapterError("send_transaction failed: timeout")
        harness.pool.get_position.side_effect = [_snapshot(), None, _snapshot(NEW, 56, 124)]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert outcome.result.close_signatures == ()
        assert harness.ledger.get_position(OLD).is_active is False
        assert harness.ledger.get_position(NEW).is_active is True

    @pytest.mark.asyncio
    async def test_position_closed_elsewhere_is_not_redeployed(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = PoolAdapterError("position account missing")
        harness.pool.get_position.side_effect = [_snapshot(), None]
        harness.balances.get_balance.side_effect = [
            WalletBalance(base=2.0, quote=1.0),
            WalletBalance(base=2.0, quote=1.0),
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_STALE
        harness.pool.add_liquidity.assert_not_awaited()
        assert harness.ledger.get_position(OLD).is_active is False
        assert not any("CRITICAL" in m for m in harness.messages())

    @pytest.mark.asyncio
    async def test_transient_verify_read_is_retried(self, harness):
        harness.pool.get_position.side_effect = [
            _snapshot(),
            PoolAdapterError("ReadTimeout"),
            _snapshot(NEW, 56, 124),
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert outcome.message is None
        assert harness.pool.get_position.await_count == 3

    @pytest.mark.asyncio
    async def test_unreadable_new_position_is_tracked_with_warning(self, harness):
        harness.pool.get_position.side_effect = [_snapshot()] + [
            PoolAdapterError("ReadTimeout")
        ] * harness.executor.read_attempts
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert NEW in outcome.message
        assert harness.ledger.get_position(OLD).is_active is False
        assert harness.ledger.get_position(NEW).is_active is True

        messages = harness.messages()
        assert not any("CRITICAL" in m for m in messages)
        assert "Successfully Repositioned" in messages[-1]
        assert "could not be verified" in messages[-1]
        assert NEW in messages[-1]


# ---------------------------------------------------------------------------
# 3. Close outcomes that cannot be taken at face value
# ---------------------------------------------------------------------------

class TestUncertainClose:
    @pytest.mark.asyncio
    async def test_partial_multi_transaction_close_is_critical_once(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = PartialCloseError(
            OLD, ["close-sig-1"], 2, PoolAdapterError("block height exceeded")
        )
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_CRITICAL
        assert "partly closed" in outcome.message
        assert "1 of 2" in outcome.message
        harness.pool.add_liquidity.assert_not_awaited()

        old = harness.ledger.get_position(OLD)
        assert old.is_active is False
        assert old.base_returned == pytest.approx(1.0)
        record = harness.access.record_execution.await_args.args[0]
        assert record.success is False

        critical = [m for m in harness.messages() if "CRITICAL" in m]
        assert len(critical) == 1
        assert "Action Required" in critical[0]
        assert "withdraw what is left" in critical[0]

    @pytest.mark.asyncio
    async def test_unconfirmed_close_that_lands_later_is_critical(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = ConfirmationUnknownError(
            "close-sig", PoolAdapterError("rpc down")
        )
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = _snapshot()

        first = await harness.run()
        assert first.action == constants.OUTCOME_FAILED
        assert "could not be confirmed" in first.message
        assert harness.ledger.get_position(OLD).is_active is True
        harness.pool.add_liquidity.assert_not_awaited()

        # Next scan: the close did land after all
        harness.pool.get_position.return_value = None
        second = await harness.run()

        assert second.action == constants.OUTCOME_CRITICAL
        assert harness.ledger.get_position(OLD).is_active is False
        critical = [m for m in harness.messages() if "CRITICAL" in m]
        assert len(critical) == 1
        assert "Action Required" in critical[0]

        third = await harness.run()
        assert third.action == constants.OUTCOME_STALE
        assert len([m for m in harness.messages() if "CRITICAL" in m]) == 1

    @pytest.mark.asyncio
    async def test_unconfirmed_close_that_never_lands_resumes_after_cooldown(self, harness, clock):
        harness.pool.remove_liquidity_and_close.side_effect = ConfirmationUnknownError(
            "close-sig", PoolAdapterError("rpc down")
        )
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = _snapshot()
        await harness.run()

        assert (await harness.run()).action == constants.OUTCOME_COOLDOWN

        clock.advance(301)
        harness.pool.remove_liquidity_and_close.side_effect = None
        harness.balances.get_balance.side_effect = [
            WalletBalance(base=0.0, quote=1.0),
            WalletBalance(base=1.0, quote=1.05),
            WalletBalance(base=0.0, quote=1.03),
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert harness.ledger.get_position(NEW).is_active is True
        assert not any("CRITICAL" in m for m in harness.messages())

    @pytest.mark.asyncio
    async def test_close_error_with_unreadable_position_is_unconfirmed(self, harness):
        harness.pool.remove_liquidity_and_close.side_effect = PoolAdapterError("send failed")
        harness.pool.get_position.side_effect = [_snapshot()] + [
            PoolAdapterError("ReadTimeout")
        ] * harness.executor.read_attempts
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_FAILED
        assert "could not be confirmed" in outcome.message
        assert harness.ledger.get_position(OLD).is_active is True
        harness.pool.add_liquidity.assert_not_awaited()


# ---------------------------------------------------------------------------
# 4. Automation settings
# ---------------------------------------------------------------------------

def _granted_with(**settings):
    return AccessDecision(
        True,
        mode=AccessMode.SUBSCRIPTION,
        linked_address="Linked111",
        settings=AutomationSettings.model_validate(settings),
    )


class TestAutomationSettings:
    @pytest.mark.asyncio
    async def test_high_threshold_defers_small_drift(self, harness):
        harness.gate.verify_access.return_value = _granted_with(urgencyThreshold="high")
        harness.pool.get_active_bin.return_value = ActiveBin(bin_id=95, price=50_500.0)
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_DEFERRED
        assert "below the high threshold" in outcome.message
        harness.pool.remove_liquidity_and_close.assert_not_awaited()
        assert harness.messages() == []
        assert harness.cooldown.can_reposition(OLD) is True

    @pytest.mark.asyncio
    async def test_high_threshold_allows_far_drift(self, harness):
        harness.gate.verify_access.return_value = _granted_with(urgencyThreshold="high")
        outcome = await harness.run()

        assert outcome.check.distance >= harness.executor.high_urgency_distance
        assert outcome.action == constants.OUTCOME_REPOSITIONED

    @pytest.mark.asyncio
    async def test_gas_limit_below_estimate_defers(self, harness):
        harness.gate.verify_access.return_value = _granted_with(maxGasCostSol=0.0001)
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_DEFERRED
        assert "exceeds" in outcome.message
        harness.pool.remove_liquidity_and_close.assert_not_awaited()
        assert harness.messages() == []

    @pytest.mark.asyncio
    async def test_unknown_threshold_falls_back_to_medium(self, harness):
        harness.gate.verify_access.return_value = _granted_with(urgencyThreshold="whenever", maxGasCostSol=1.0)
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED


# ---------------------------------------------------------------------------
# 5. Critical path
# ---------------------------------------------------------------------------

class TestCriticalPath:
    @pytest.mark.asyncio
    async def test_create_failure_after_close_is_critical_once(self, harness):
        harness.pool.add_liquidity.side_effect = PoolAdapterError("insufficient funds")
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_CRITICAL
        assert outcome.message.startswith("CRITICAL:")
        old = harness.ledger.get_position(OLD)
        assert old.is_active is False
        closed_at = old.closed_at

        record = harness.access.record_execution.await_args.args[0]
        assert record.success is False
        harness.access.use_credits.assert_not_awaited()

        # The next tick still holds the stale row; the position is gone on-chain
        harness.pool.get_position.side_effect = None
        harness.pool.get_position.return_value = None
        again = await harness.run()

        assert again.action == constants.OUTCOME_STALE
        assert harness.ledger.get_position(OLD).closed_at == closed_at
        critical = [m for m in harness.messages() if "CRITICAL" in m]
        assert len(critical) == 1
        assert "Action Required" in critical[0]

    @pytest.mark.asyncio
    async def test_transient_failures_exhaust_attempts(self, harness):
        harness.pool.add_liquidity.side_effect = PoolAdapterError("price moved")
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_CRITICAL
        assert harness.pool.add_liquidity.await_count == harness.executor.max_attempts

    @pytest.mark.asyncio
    async def test_empty_new_position_is_critical(self, harness):
        harness.pool.get_position.side_effect = [_snapshot(), _snapshot(NEW, 56, 124, base=0.0)]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_CRITICAL
        assert "holds no liquidity" in outcome.message
        assert harness.ledger.get_position(NEW) is None
        assert harness.ledger.get_position(OLD).is_active is False

    @pytest.mark.asyncio
    async def test_nothing_to_redeploy_is_critical(self, harness):
        harness.balances.get_balance.side_effect = [
            WalletBalance(base=0.0, quote=1.0),
            WalletBalance(base=0.0, quote=1.05),
        ]
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_CRITICAL
        harness.pool.add_liquidity.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persistence_failure_after_chain_success_still_reports(self, harness):
        harness.ledger.record_reposition = MagicMock(side_effect=LookupError("row vanished"))
        outcome = await harness.run()

        assert outcome.action == constants.OUTCOME_REPOSITIONED
        assert "manual reconciliation" in outcome.message
        assert "Successfully Repositioned" in harness.messages()[-1]
