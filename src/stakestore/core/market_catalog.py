"""Catalog of known Pendle markets."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from stakestore.api.pendle_client import PendleClient
from stakestore.models.market import Market


class MarketCatalog:
    """Read-mostly list of known markets.

    A refresh builds a new tuple of markets and swaps it in whole, so readers
    always see one consistent snapshot.
    """

    def __init__(
        self,
        client: Optional[PendleClient] = None,
        markets: Optional[list[Market]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize market catalog.

        Args:
            client: Routing service client used by refresh()
            markets: Optional initial markets
            logger: Optional logger instance
        """
        self.client = client
        self.logger = logger or logging.getLogger(__name__)
        self._markets: tuple[Market, ...] = tuple(markets or ())
        self._by_pool: dict[str, Market] = {m.pool_id.lower(): m for m in self._markets}
        self.last_refreshed: Optional[datetime] = None

    def _replace(self, markets: list[Market]) -> None:
        by_pool = {m.pool_id.lower(): m for m in markets}
        self._markets, self._by_pool = tuple(markets), by_pool
        self.last_refreshed = datetime.now(timezone.utc)

    def _parse(self, entries: list) -> list[Market]:
        markets = []
        for entry in entries:
            try:
                markets.append(Market.from_api(entry))
            except (ValueError, TypeError) as e:
                self.logger.warning(f"Skipping malformed market entry: {e}")
        return markets

    def refresh(self) -> int:
        """Replace the catalog with the routing service's active markets.

        Returns:
            Number of markets now in the catalog

        Raises:
            RuntimeError: If the catalog has no client
            ExternalServiceError: If the fetch fails; the previous catalog is kept
        """
        if self.client is None:
            raise RuntimeError("MarketCatalog has no routing client to refresh from")

        markets = self._parse(self.client.get_active_markets())
        self._replace(markets)
        self.logger.info(f"Market catalog refreshed: {len(markets)} markets")
        return len(markets)

    def load_from_file(self, path: str) -> int:
        """Replace the catalog with a JSON snapshot shaped like the active markets response."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        entries = data.get("markets", []) if isinstance(data, dict) else data
        markets = self._parse(entries)
        self._replace(markets)
        self.logger.info(f"Market catalog loaded from {path}: {len(markets)} markets")
        return len(markets)

    def markets(self) -> tuple[Market, ...]:
        """Current snapshot."""
        return self._markets

    def get(self, pool_id: str) -> Optional[Market]:
        """Look up a market by pool address (case-insensitive)."""
        return self._by_pool.get((pool_id or "").lower())

    def matured(self, now: Optional[datetime] = None) -> list[Market]:
        return [m for m in self._markets if m.is_matured(now)]

    def __len__(self) -> int:
        return len(self._markets)
