"""Telegram transport for user notifications, plus admin status commands."""

import asyncio
import logging
import threading
from typing import Callable, Optional

from telegram import Update
from telegram.constants import ParseMode
from telegram.ext import Application, CommandHandler, ContextTypes

from rebalancer.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(
        self,
        token: str,
        admin_chat_ids: list[int],
        status_provider: Callable[[], dict] | None = None,
    ):
        self.token = token
        self.admin_chat_ids = set(admin_chat_ids)
        self.status_provider = status_provider
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready = threading.Event()

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.admin_chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return
        if self.status_provider is None:
            await update.message.reply_text("Status unavailable.")
            return
        await update.message.reply_text(format_status(self.status_provider()))

    async def send_message(self, chat_id: int, text: str):
        """Deliver one Markdown message; awaitable from any event loop."""
        if not self._ready.is_set() or not self._app or not self._loop:
            raise RuntimeError("Telegram bot is not running")
        future = asyncio.run_coroutine_threadsafe(
            self._app.bot.send_message(chat_id=chat_id, text=text, parse_mode=ParseMode.MARKDOWN),
            self._loop,
        )
        await asyncio.wrap_future(future)

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = Application.builder().token(self.token).build()
        self._app.add_handler(CommandHandler("status", self._cmd_status))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._ready.set()
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._ready.clear()


def format_status(status: dict) -> str:
    scheduler_str = "running" if status.get("running") else "stopped"
    scan = status.get("last_scan") or {}
    lines = [
        f"Scheduler: {scheduler_str}",
        f"Scans completed: {status.get('scans_completed', 0)}",
    ]
    if scan:
        lines += [
            f"Last scan: {scan.get('finished_at')}",
            f"Users: {scan.get('users_processed', 0)} | Positions: {scan.get('positions_scanned', 0)}",
            f"Repositioned: {scan.get('repositioned', 0)} | Errors: {scan.get('errors', 0)}",
        ]
        if scan.get("last_error"):
            lines.append(f"Last error: {scan['last_error'][:200]}")
    return "\n".join(lines)


def init_bot(status_provider: Callable[[], dict] | None = None) -> TelegramBot:
    """Initialize and return the bot singleton."""
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        admin_chat_ids=settings.telegram_admin_chat_ids,
        status_provider=status_provider,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """Get the bot singleton, or None if not initialized."""
    return _bot_instance
