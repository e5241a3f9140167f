"""On-chain holdings lookup across all known markets."""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from stakestore.api.chain_gateway import ChainGateway
from stakestore.core.market_catalog import MarketCatalog
from stakestore.models.holding import Holding


class HoldingsTracker:
    """Computes a user's principal-token positions from live balances.

    Nothing is cached beyond a single call: balances are read fresh each time.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        catalog: MarketCatalog,
        max_concurrency: int = 8,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize holdings tracker.

        Args:
            gateway: Chain gateway used for balance reads
            catalog: Market catalog to scan
            max_concurrency: Maximum balance reads in flight at once
            logger: Optional logger instance
        """
        self.gateway = gateway
        self.catalog = catalog
        self.max_concurrency = max_concurrency
        self.logger = logger or logging.getLogger(__name__)

    async def current_holdings(self, user_address: str) -> list[Holding]:
        """Return one Holding per market where the user holds a positive PT balance.

        Each distinct PT token is read once even if several markets share it.

        Raises:
            ExternalServiceError: If a balance read keeps failing
        """
        markets = self.catalog.markets()
        tokens = list(dict.fromkeys(m.principal_token_address.lower() for m in markets))

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def read(token: str) -> int:
            async with semaphore:
                return await asyncio.to_thread(self.gateway.read_balance, token, user_address)

        balances = dict(zip(tokens, await asyncio.gather(*(read(t) for t in tokens))))
        self.logger.debug(f"Read {len(tokens)} PT balances for {user_address}")

        holdings = []
        for market in markets:
            balance = balances[market.principal_token_address.lower()]
            if balance > 0:
                holdings.append(
                    Holding(
                        market_id=market.pool_id,
                        market_name=market.name,
                        user_address=user_address,
                        principal_token_address=market.principal_token_address,
                        principal_token_balance=balance,
                        expiry=market.expiry,
                    )
                )
        return holdings

    async def redemption_candidates(
        self, user_address: str, now: Optional[datetime] = None
    ) -> list[Holding]:
        """Holdings whose market has matured."""
        matured = {m.pool_id.lower() for m in self.catalog.matured(now)}
        holdings = await self.current_holdings(user_address)
        return [h for h in holdings if h.market_id.lower() in matured]
