"""Entitlement gate: subscription-or-credits plus per-user automation settings.

Every remote lookup goes through a short-lived cache so a 30s scan over many
positions does not hammer the access-control service. The gate fails closed:
any remote error denies access for this cycle.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from rebalancer.engine.errors import AccessControlError
from rebalancer.schemas.access import AutomationSettings
from rebalancer.services.access_control import AccessControlClient
from rebalancer.utils.cache import TTLCache
from rebalancer.utils.constants import CREDITS_PER_REPOSITION
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


class AccessMode(str, Enum):
    SUBSCRIPTION = "subscription"
    CREDITS = "credits"


class DenyReason(str, Enum):
    NO_LINKED_WALLET = "no linked wallet"
    NO_SUBSCRIPTION = "no subscription"
    CHECK_FAILED = "subscription check failed"
    AUTOMATION_DISABLED = "automation disabled"


@dataclass(frozen=True)
class AccessDecision:
    granted: bool
    mode: AccessMode | None = None
    linked_address: str | None = None
    settings: AutomationSettings | None = None
    reason: DenyReason | None = None
    detail: str | None = None

    @property
    def silent(self) -> bool:
        """Denials the user chose themselves; never notified."""
        return self.reason is DenyReason.AUTOMATION_DISABLED


class EntitlementGate:
    def __init__(
        self,
        client: AccessControlClient,
        status_ttl: float = 60.0,
        settings_ttl: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self._linked = TTLCache(settings_ttl, clock)
        self._settings = TTLCache(settings_ttl, clock)
        self._subscriptions = TTLCache(status_ttl, clock)
        self._credits = TTLCache(status_ttl, clock)

    async def verify_access(self, user_key: str) -> AccessDecision:
        """Decide whether automated repositioning may run for this user now."""
        try:
            address = await self._linked_address(user_key)
        except AccessControlError as e:
            logger.warning(f"[user {user_key}] Linked account lookup failed: {e}")
            return AccessDecision(False, reason=DenyReason.CHECK_FAILED, detail=str(e))

        if not address:
            logger.info(f"[user {user_key}] No linked wallet")
            return AccessDecision(
                False,
                reason=DenyReason.NO_LINKED_WALLET,
                detail="No linked wallet. Link your wallet on the website to enable auto-reposition.",
            )

        try:
            subscription = await self._subscription(address)
        except AccessControlError as e:
            logger.warning(f"[user {user_key}] Subscription check failed: {e}")
            return AccessDecision(
                False, linked_address=address, reason=DenyReason.CHECK_FAILED, detail=str(e)
            )

        if subscription.is_active:
            mode = AccessMode.SUBSCRIPTION
            logger.info(
                f"[user {user_key}] Active subscription for {short_id(address)} "
                f"(tier={subscription.tier}, expires={subscription.expires_at})"
            )
        else:
            try:
                balance = await self._credit_balance(address)
            except AccessControlError as e:
                logger.warning(f"[user {user_key}] Credit balance check failed: {e}")
                return AccessDecision(
                    False, linked_address=address, reason=DenyReason.NO_SUBSCRIPTION, detail=str(e)
                )
            if balance < CREDITS_PER_REPOSITION:
                logger.info(f"[user {user_key}] No subscription and {balance} credits")
                return AccessDecision(False, linked_address=address, reason=DenyReason.NO_SUBSCRIPTION)
            mode = AccessMode.CREDITS
            logger.info(f"[user {user_key}] Using credits (balance={balance})")

        automation = await self._automation_settings(user_key)
        if not automation.auto_reposition_enabled:
            logger.info(f"[user {user_key}] Auto-reposition disabled in settings, skipping")
            return AccessDecision(
                False,
                mode=mode,
                linked_address=address,
                settings=automation,
                reason=DenyReason.AUTOMATION_DISABLED,
            )

        return AccessDecision(True, mode=mode, linked_address=address, settings=automation)

    async def _linked_address(self, user_key: str) -> str | None:
        cached = self._linked.get(user_key)
        if cached is not None:
            return cached.address
        account = await self.client.get_linked_account(user_key)
        self._linked.set(user_key, account)
        return account.address

    async def _subscription(self, address: str):
        cached = self._subscriptions.get(address)
        if cached is not None:
            return cached
        status = await self.client.check_subscription(address)
        self._subscriptions.set(address, status)
        return status

    async def _credit_balance(self, address: str) -> float:
        cached = self._credits.get(address)
        if cached is not None:
            return cached.balance
        credits = await self.client.get_credit_balance(address)
        self._credits.set(address, credits)
        return credits.balance

    async def _automation_settings(self, user_key: str) -> AutomationSettings:
        cached = self._settings.get(user_key)
        if cached is not None:
            return cached
        try:
            automation = await self.client.get_automation_settings(user_key)
        except AccessControlError as e:
            # Not cached, so the next cycle asks again
            logger.warning(f"[user {user_key}] Could not fetch automation settings, using defaults: {e}")
            return AutomationSettings()
        self._settings.set(user_key, automation)
        return automation

    def invalidate_credits(self, address: str):
        self._credits.invalidate(address)

    def invalidate_user(self, user_key: str, address: str | None = None):
        """Drop everything cached for a user whose settings just changed."""
        self._settings.invalidate(user_key)
        self._linked.invalidate(user_key)
        if address:
            self._subscriptions.invalidate(address)
            self._credits.invalidate(address)
