"""User-facing reposition notifications.

Six kinds of message. The three access notices are throttled per
(user, kind) so a user without a linked wallet or payment is not messaged
every scan; the rest always go out. Delivery failures are logged and never
raised into the engine.
"""

import logging
import time
from enum import Enum
from typing import Callable, Protocol

from rebalancer.engine.settlement import RepositionResult
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    STARTING = "starting"
    SUCCESS = "success"
    ERROR = "error"
    SUBSCRIPTION_REQUIRED = "subscription_required"
    NO_SUBSCRIPTION = "no_subscription"
    SUBSCRIPTION_CHECK_FAILED = "subscription_check_failed"


THROTTLED_KINDS = frozenset({
    NotificationKind.SUBSCRIPTION_REQUIRED,
    NotificationKind.NO_SUBSCRIPTION,
    NotificationKind.SUBSCRIPTION_CHECK_FAILED,
})


class MessageTransport(Protocol):
    async def send_message(self, chat_id: int, text: str) -> None: ...


def classify_error(message: str) -> str:
    """Bucket an error message: critical, cooldown, volatile or generic."""
    lowered = message.lower()
    if "critical" in lowered:
        return "critical"
    if "cooldown" in lowered:
        return "cooldown"
    if "volatile" in lowered or "slippage" in lowered:
        return "volatile"
    return "generic"


class Notifier:
    def __init__(
        self,
        transport: MessageTransport | None,
        throttle_seconds: float = 8 * 3600,
        base_symbol: str = "zBTC",
        quote_symbol: str = "SOL",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.transport = transport
        self.throttle_seconds = throttle_seconds
        self.base_symbol = base_symbol
        self.quote_symbol = quote_symbol
        self._clock = clock
        self._last_sent: dict[tuple[int, NotificationKind], float] = {}

    def _throttled(self, chat_id: int, kind: NotificationKind) -> bool:
        if kind not in THROTTLED_KINDS:
            return False
        last = self._last_sent.get((chat_id, kind))
        return last is not None and self._clock() - last < self.throttle_seconds

    async def notify(self, chat_id: int, kind: NotificationKind, text: str) -> bool:
        """Send one message; returns False when throttled or undeliverable."""
        if self._throttled(chat_id, kind):
            logger.debug(f"[user {chat_id}] {kind.value} throttled")
            return False
        if self.transport is None:
            logger.info(f"[user {chat_id}] {kind.value} (no transport): {text.splitlines()[0]}")
            self._stamp(chat_id, kind)
            return False
        try:
            await self.transport.send_message(chat_id, text)
        except Exception as e:
            # Not stamped: the next tick tries again
            logger.error(f"[user {chat_id}] Failed to deliver {kind.value} notification: {e}")
            return False
        self._stamp(chat_id, kind)
        return True

    def _stamp(self, chat_id: int, kind: NotificationKind):
        if kind in THROTTLED_KINDS:
            self._last_sent[(chat_id, kind)] = self._clock()

    # ------------------------------------------------------------------
    # Message builders
    # ------------------------------------------------------------------

    async def starting(self, chat_id: int, position: str, base_amount: float, quote_amount: float) -> bool:
        text = (
            "⚠️ *Position Out of Range*\n\n"
            f"🆔 Position: `{short_id(position)}`\n"
            f"💰 Amount: {base_amount} {self.base_symbol} + {quote_amount:.4f} {self.quote_symbol}\n\n"
            "🔄 Auto-repositioning in progress..."
        )
        return await self.notify(chat_id, NotificationKind.STARTING, text)

    async def success(self, chat_id: int, result: RepositionResult, note: str | None = None) -> bool:
        s = result.settlement
        sign = "+" if s.pnl_usd >= 0 else ""
        emoji = "📈" if s.pnl_usd >= 0 else "📉"
        lines = [
            "✅ *Successfully Repositioned!*",
            "",
            f"🔴 Old Position: `{short_id(result.old_position)}`",
            f"🟢 New Position: `{short_id(result.new_position)}`",
            "",
            f"📊 Exit: ${s.exit_price:.2f} (Bin {s.exit_bin})",
            f"📊 Entry: ${result.entry_price:.2f} (Bin {result.entry_bin})",
            f"📐 Range: bins {result.min_bin} to {result.max_bin}",
            "",
            f"{emoji} PnL: {sign}${s.pnl_usd:.2f} ({sign}{s.pnl_percent:.2f}%)",
        ]
        if s.base_fees > 0 or s.quote_fees > 0:
            lines.append(
                f"💰 Fees: {s.base_fees:.8f} {self.base_symbol} + {s.quote_fees:.6f} {self.quote_symbol}"
            )
        lines += [
            f"💰 Amount: {result.base_amount} {self.base_symbol}",
            f"⛽ Est. network cost: ~{result.gas_estimate:.6f} {self.quote_symbol}",
        ]
        if note:
            lines += ["", f"⚠️ {note}"]
        return await self.notify(chat_id, NotificationKind.SUCCESS, "\n".join(lines))

    async def error(self, chat_id: int, position: str, message: str) -> bool:
        text = "❌ *Repositioning Failed*\n\n"
        category = classify_error(message)
        if category == "critical":
            text += (
                "⚠️ The reposition stopped part-way and will not be retried automatically.\n\n"
                f"{message}\n\n"
                "🔧 *Action Required:*\n"
                "Check your wallet and positions in the bot menu before doing anything else."
            )
        elif category == "cooldown":
            text += "⏳ Position is on cooldown.\n\nThe bot will try again in a few minutes."
        elif category == "volatile":
            text += "📊 Market is very volatile right now.\n\nThe bot will retry automatically."
        else:
            text += f"Error: {message[:200]}\n\nThe bot will try again on the next check."
        text += f"\n\n🆔 Position: `{short_id(position)}`"
        return await self.notify(chat_id, NotificationKind.ERROR, text)

    async def subscription_required(self, chat_id: int, position: str, detail: str | None = None) -> bool:
        text = (
            "💳 *Subscription Required*\n\n"
            f"🆔 Position: `{short_id(position)}`\n"
            "⚠️ Position is out of range!\n\n"
            f"{detail or 'Auto-reposition requires an active subscription or credits.'}"
        )
        return await self.notify(chat_id, NotificationKind.SUBSCRIPTION_REQUIRED, text)

    async def no_subscription(self, chat_id: int, position: str) -> bool:
        text = (
            "💳 *No Active Subscription*\n\n"
            f"🆔 Position: `{short_id(position)}`\n"
            "⚠️ Position is out of range but cannot auto-reposition.\n\n"
            "Your subscription may have expired and no credits are left."
        )
        return await self.notify(chat_id, NotificationKind.NO_SUBSCRIPTION, text)

    async def subscription_check_failed(self, chat_id: int, position: str, detail: str | None = None) -> bool:
        text = (
            "⚠️ *Subscription Check Failed*\n\n"
            f"🆔 Position: `{short_id(position)}`\n"
            "❌ Could not verify subscription status.\n\n"
            f"Error: {detail or 'Unknown error'}\n\n"
            "🔄 The bot will retry on the next check."
        )
        return await self.notify(chat_id, NotificationKind.SUBSCRIPTION_CHECK_FAILED, text)
