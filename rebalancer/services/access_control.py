"""Remote access-control service client.

Speaks JSON-RPC 2.0 ``tools/call`` to the subscription/credits service.
Each tool returns ``result.content[0].text`` holding a JSON document, which
is validated into the models in ``rebalancer.schemas.access``.

All calls are safe to retry on timeout except ``use_credits``; callers must
invoke it at most once per successful reposition.
"""

import itertools
import json
import logging
from typing import Any

import httpx
from pydantic import ValidationError

from rebalancer.engine.errors import AccessControlError
from rebalancer.schemas.access import (
    AutomationSettings,
    CreditBalance,
    ExecutionRecord,
    LinkedAccount,
    SubscriptionStatus,
)
from rebalancer.utils import constants
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)


class AccessControlClient:
    """Async client for the remote access-control service."""

    def __init__(
        self,
        url: str,
        api_key: str = "",
        timeout: float = 5.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._ids = itertools.count(1)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"
            self._client = httpx.AsyncClient(
                timeout=self.timeout, headers=headers, transport=self._transport
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        """Invoke one tool and return its decoded JSON result."""
        request = {
            "jsonrpc": "2.0",
            "method": "tools/call",
            "params": {"name": name, "arguments": arguments},
            "id": next(self._ids),
        }
        client = await self._get_client()
        try:
            resp = await client.post(self.url, json=request)
            resp.raise_for_status()
            body = resp.json()
        except httpx.TimeoutException as e:
            raise AccessControlError(f"{name}: request timed out") from e
        except httpx.HTTPError as e:
            raise AccessControlError(f"{name}: {e}") from e
        except ValueError as e:
            raise AccessControlError(f"{name}: response is not JSON") from e

        if body.get("error"):
            err = body["error"]
            message = err.get("message") if isinstance(err, dict) else str(err)
            raise AccessControlError(f"{name} failed: {message}")

        content = (body.get("result") or {}).get("content") or []
        if not content or not isinstance(content, list):
            raise AccessControlError(f"{name}: invalid response format")

        first = content[0] or {}
        text = first.get("text")
        if text is None and isinstance(first.get("value"), str):
            text = first["value"]
        if not text:
            raise AccessControlError(f"{name}: empty response")
        try:
            return json.loads(text)
        except ValueError:
            return text

    async def _call_model(self, name: str, arguments: dict[str, Any], model):
        data = await self.call_tool(name, arguments)
        if not isinstance(data, dict):
            raise AccessControlError(f"{name}: expected an object, got {type(data).__name__}")
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise AccessControlError(f"{name}: malformed payload: {e}") from e

    async def get_linked_account(self, user_key: str) -> LinkedAccount:
        return await self._call_model(
            constants.TOOL_GET_LINKED_ACCOUNT, {"telegramId": user_key}, LinkedAccount
        )

    async def check_subscription(self, address: str) -> SubscriptionStatus:
        return await self._call_model(
            constants.TOOL_CHECK_SUBSCRIPTION, {"walletAddress": address}, SubscriptionStatus
        )

    async def get_credit_balance(self, address: str) -> CreditBalance:
        return await self._call_model(
            constants.TOOL_GET_CREDIT_BALANCE, {"walletAddress": address}, CreditBalance
        )

    async def get_automation_settings(self, user_key: str) -> AutomationSettings:
        return await self._call_model(
            constants.TOOL_GET_SETTINGS, {"telegramId": user_key}, AutomationSettings
        )

    async def update_automation_settings(self, user_key: str, patch: dict[str, Any]) -> AutomationSettings:
        return await self._call_model(
            constants.TOOL_UPDATE_SETTINGS,
            {"telegramId": user_key, "settings": patch},
            AutomationSettings,
        )

    async def use_credits(self, address: str, count: int, ref_id: str, note: str) -> None:
        logger.info(f"Deducting {count} credit(s) from {short_id(address)} for {short_id(ref_id)}")
        await self.call_tool(
            constants.TOOL_USE_CREDITS,
            {
                "walletAddress": address,
                "amount": count,
                "relatedResourceId": ref_id,
                "description": note,
            },
        )

    async def record_execution(self, record: ExecutionRecord) -> None:
        await self.call_tool(
            constants.TOOL_RECORD_EXECUTION, record.model_dump(by_alias=True, exclude_none=True)
        )
