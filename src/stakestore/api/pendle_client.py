"""Pendle hosted API client wrapper with error handling and retry logic."""

import logging
from typing import Any, Optional

import httpx

from stakestore.config.settings import StakeStoreConfig
from stakestore.core.exceptions import ExternalServiceError
from stakestore.utils.retry import exponential_backoff, with_retries


def _is_transient(error: Exception) -> bool:
    return isinstance(error, ExternalServiceError) and error.transient


class PendleClient:
    """Client for the Pendle routing/pricing service.

    Every response is treated as untrusted: callers get plain decoded JSON and are
    responsible for validating its shape. Transport failures, 429 and 5xx answers are
    retried with backoff; other 4xx answers are not.
    """

    def __init__(
        self,
        config: StakeStoreConfig,
        http_client: Optional[httpx.Client] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize Pendle client.

        Args:
            config: StakeStore configuration
            http_client: Optional pre-built httpx client (used by tests)
            logger: Optional logger instance
        """
        self.config = config
        self.base_url = config.pendle_api_base_url
        self.chain_id = config.chain_id
        self.max_retries = config.max_retries
        self.logger = logger or logging.getLogger(__name__)

        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=config.quote_timeout)
        self._retry_wait = exponential_backoff(config.retry_backoff_seconds)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def _request(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """GET a path once, translating failures into ExternalServiceError."""
        url = f"{self.base_url}{path}"
        try:
            response = self._http.get(url, params=params, timeout=self.config.quote_timeout)
        except httpx.TransportError as e:
            raise ExternalServiceError(f"Request to {path} failed: {e}") from e

        if response.status_code == 429 or response.status_code >= 500:
            raise ExternalServiceError(
                f"{path} returned {response.status_code}", status_code=response.status_code
            )
        if response.status_code >= 400:
            raise ExternalServiceError(
                f"{path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
                transient=False,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ExternalServiceError(
                f"{path} returned a non-JSON body", status_code=response.status_code, transient=False
            ) from e

    def _get(self, path: str, params: Optional[dict[str, Any]] = None, *, action_name: str) -> Any:
        return with_retries(
            lambda: self._request(path, params),
            action_name=action_name,
            max_retries=self.max_retries,
            retry_wait_fn=self._retry_wait,
            is_retryable=_is_transient,
            logger=self.logger,
        )

    def get_active_markets(self) -> list[dict]:
        """Fetch the active markets on the configured chain.

        Returns:
            Raw market entries

        Raises:
            ExternalServiceError: If the request fails or the body has no markets list
        """
        payload = self._get(
            f"/v1/{self.chain_id}/markets/active", action_name="fetch active markets"
        )
        markets = payload.get("markets") if isinstance(payload, dict) else None
        if not isinstance(markets, list):
            raise ExternalServiceError("Active markets response has no markets list", transient=False)
        return markets

    def get_mint_transaction(
        self,
        yt_address: str,
        token_in: str,
        amount_in: int,
        slippage: float,
        receiver: str,
    ) -> Any:
        """Request mint PT/YT transaction data.

        Args:
            yt_address: Yield token of the target market
            token_in: Token being spent
            amount_in: Amount in smallest units
            slippage: Slippage tolerance as a fraction
            receiver: Address receiving the minted tokens

        Returns:
            Raw response; expected to contain ``tx.to`` and ``tx.data``
        """
        params = {
            "receiver": receiver,
            "yt": yt_address,
            "slippage": slippage,
            "enableAggregator": str(self.config.enable_aggregator).lower(),
            "tokenIn": token_in,
            "amountIn": str(amount_in),
        }
        self.logger.debug(f"Requesting mint transaction: {params}")
        return self._get(f"/v1/sdk/{self.chain_id}/mint", params, action_name="fetch mint quote")

    def get_redeem_transaction(
        self,
        yt_address: str,
        amount_in: int,
        token_out: str,
        receiver: str,
        slippage: Optional[float] = None,
    ) -> Any:
        """Request redeem transaction data for a matured position.

        Returns:
            Raw response; ``tx`` is absent when nothing can be redeemed
        """
        params = {
            "receiver": receiver,
            "yt": yt_address,
            "slippage": self.config.default_slippage if slippage is None else slippage,
            "enableAggregator": str(self.config.enable_aggregator).lower(),
            "tokenOut": token_out,
            "amountIn": str(amount_in),
        }
        return self._get(
            f"/v1/sdk/{self.chain_id}/redeem", params, action_name="fetch redeem payload"
        )

    def get_positions(self, owner: str) -> Any:
        """Fetch the routing service's view of an owner's positions."""
        return self._get(
            f"/v1/{self.chain_id}/positions", {"owner": owner}, action_name="fetch positions"
        )
