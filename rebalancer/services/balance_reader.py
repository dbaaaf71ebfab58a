"""Wallet balance reads: native SOL plus the pool's base token."""

import logging

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TokenAccountOpts
from solders.pubkey import Pubkey

from rebalancer.engine.errors import PoolAdapterError
from rebalancer.schemas.pool import WalletBalance
from rebalancer.utils.logging import short_id

logger = logging.getLogger(__name__)

LAMPORTS_PER_SOL = 1_000_000_000


def _token_amount(account) -> float:
    """UI amount of one jsonParsed token account."""
    info = account.account.data.parsed["info"]
    amount = info["tokenAmount"]
    return int(amount["amount"]) / 10 ** int(amount["decimals"])


class BalanceReader:
    def __init__(self, rpc: AsyncClient, base_mint: str):
        self.rpc = rpc
        self.base_mint = Pubkey.from_string(base_mint)

    async def get_balance(self, owner: str) -> WalletBalance:
        """Current (base, quote) holdings of ``owner``; a missing token account reads as 0."""
        owner_key = Pubkey.from_string(owner)
        try:
            sol = await self.rpc.get_balance(owner_key, commitment=Confirmed)
            accounts = await self.rpc.get_token_accounts_by_owner_json_parsed(
                owner_key, TokenAccountOpts(mint=self.base_mint), commitment=Confirmed
            )
        except Exception as e:
            raise PoolAdapterError(f"Balance read failed for {short_id(owner)}: {e}") from e

        quote = (sol.value or 0) / LAMPORTS_PER_SOL
        base = sum(_token_amount(a) for a in accounts.value or [])
        logger.debug(f"Balance {short_id(owner)}: base={base} quote={quote}")
        return WalletBalance(base=base, quote=quote)
