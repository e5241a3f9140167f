"""Redemption transaction construction for matured positions."""

import logging
from typing import Optional

from stakestore.api.chain_gateway import ChainGateway
from stakestore.api.pendle_client import PendleClient
from stakestore.core.exceptions import InvalidRequest, NoRedemptionAvailable
from stakestore.core.market_catalog import MarketCatalog
from stakestore.models.enums import TokenType
from stakestore.models.transaction import RedemptionIntent, TransactionDescriptor


class RedemptionBuilder:
    """Builds, but never submits, the transaction redeeming a position.

    The user's own signer decides whether and when to send it.
    """

    def __init__(
        self,
        client: PendleClient,
        gateway: ChainGateway,
        catalog: MarketCatalog,
        logger: Optional[logging.Logger] = None,
    ):
        self.client = client
        self.gateway = gateway
        self.catalog = catalog
        self.logger = logger or logging.getLogger(__name__)

    def build_redemption(self, intent: RedemptionIntent) -> TransactionDescriptor:
        """Build the unsigned redeem transaction for a position.

        The redeemed amount is the user's current balance of the requested token
        type; proceeds go to the market's underlying asset.

        Raises:
            InvalidRequest: If the market is unknown
            NoRedemptionAvailable: If the user holds nothing or the service returns no payload
        """
        market = self.catalog.get(intent.market_address)
        if market is None:
            raise InvalidRequest(f"Unknown market {intent.market_address}")

        token = (
            market.principal_token_address
            if intent.token_type == TokenType.PT
            else market.yield_token_address
        )
        amount = self.gateway.read_balance(token, intent.user_address)
        if amount <= 0:
            raise NoRedemptionAvailable(
                f"{intent.user_address} holds no {intent.token_type.value} in {market.pool_id}"
            )

        payload = self.client.get_redeem_transaction(
            yt_address=market.yield_token_address,
            amount_in=amount,
            token_out=market.underlying_asset or token,
            receiver=intent.user_address,
        )
        tx = payload.get("tx") if isinstance(payload, dict) else None
        if not (isinstance(tx, dict) and tx.get("to") and tx.get("data")):
            raise NoRedemptionAvailable(
                f"No redemption payload for {market.pool_id}"
                + ("" if market.is_matured() else " (market not matured)")
            )

        self.logger.info(f"Built redemption of {amount} {intent.token_type.value} in {market.pool_id}")
        try:
            value = int(tx.get("value") or 0)
        except (TypeError, ValueError):
            value = 0
        return TransactionDescriptor(
            to=tx["to"],
            data=tx["data"],
            value=value,
            from_address=intent.user_address,
            chain_id=self.gateway.chain_id,
        )
