"""Mint quote requests against the routing service."""

import logging
import re
from typing import Any, Optional

from web3 import Web3

from stakestore.api.pendle_client import PendleClient
from stakestore.core.exceptions import InvalidQuote
from stakestore.models.market import Market
from stakestore.models.transaction import MintQuote

_HEX_DATA = re.compile(r"0x(?:[0-9a-fA-F]{2})+")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class MintCoordinator:
    """Fetches and validates mint PT/YT transaction payloads.

    Quotes are single-use. Nothing here retries on a bad payload; retrying with
    the same inputs is the orchestrator's decision.
    """

    def __init__(self, client: PendleClient, logger: Optional[logging.Logger] = None):
        self.client = client
        self.logger = logger or logging.getLogger(__name__)

    def quote_mint(
        self,
        market: Market,
        input_token: str,
        input_amount: int,
        slippage_tolerance: float,
        receiver_address: str,
    ) -> MintQuote:
        """Request a mint payload for a market.

        Raises:
            InvalidQuote: If the response has no transaction target or calldata
            ExternalServiceError: If the routing service cannot be reached
        """
        payload = self.client.get_mint_transaction(
            yt_address=market.yield_token_address,
            token_in=input_token,
            amount_in=input_amount,
            slippage=slippage_tolerance,
            receiver=receiver_address,
        )
        quote = self.parse_quote(payload)
        self.logger.info(
            f"Mint quote for {market.name or market.pool_id}: target={quote.transaction_target} "
            f"expected_out={quote.expected_amount_out}"
        )
        return quote

    @staticmethod
    def parse_quote(payload: Any) -> MintQuote:
        """Validate an untrusted mint response.

        Raises:
            InvalidQuote: If ``tx.to`` is not an address or ``tx.data`` is not hex calldata
        """
        if not isinstance(payload, dict):
            raise InvalidQuote("Mint response is not an object")

        tx = payload.get("tx")
        if not isinstance(tx, dict):
            raise InvalidQuote("Mint response has no transaction")

        target = tx.get("to")
        data = tx.get("data")
        if not (isinstance(target, str) and target.strip()):
            raise InvalidQuote("Mint transaction has no target")
        if not Web3.is_address(target):
            raise InvalidQuote(f"Mint transaction target {target!r} is not an address")
        if not (isinstance(data, str) and data.strip() not in ("", "0x")):
            raise InvalidQuote("Mint transaction has no calldata")
        if not _HEX_DATA.fullmatch(data):
            raise InvalidQuote("Mint transaction calldata is not 0x-prefixed hex")

        info = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        impact = info.get("priceImpact")

        return MintQuote(
            transaction_target=target,
            transaction_data=data,
            transaction_value=_as_int(tx.get("value")) or 0,
            expected_amount_out=_as_int(info.get("amountOut", info.get("amountPtOut"))),
            price_impact=float(impact) if isinstance(impact, (int, float)) else None,
        )
