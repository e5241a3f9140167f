"""Tests for allowance management and mint quotes."""

from unittest.mock import Mock

import pytest

from conftest import ROUTER, SIGNER, TOKEN_IN, USER, YT, make_market, mint_payload
from stakestore.core.approval_manager import ApprovalManager
from stakestore.core.exceptions import (
    ApprovalFailed,
    ChainTimeout,
    ExternalServiceError,
    InvalidQuote,
    SubmissionFailed,
    TransactionReverted,
)
from stakestore.core.mint_coordinator import MintCoordinator
from stakestore.models.transaction import TransactionDescriptor


def make_gateway(allowance):
    gateway = Mock()
    gateway.address = SIGNER
    gateway.read_allowance.return_value = allowance
    gateway.build_approve.return_value = TransactionDescriptor(to=TOKEN_IN, data="0x095ea7b3")
    gateway.submit.return_value = "0xapprove"
    return gateway


def test_existing_allowance_needs_no_approval():
    """Test nothing is sent when the allowance already covers the amount."""
    gateway = make_gateway(allowance=1_000_000)

    assert ApprovalManager(gateway).ensure_approval(TOKEN_IN, ROUTER, 1_000_000) is None

    gateway.read_allowance.assert_called_once_with(TOKEN_IN, SIGNER, ROUTER)
    gateway.submit.assert_not_called()


def test_approval_for_exact_amount():
    """Test a short allowance is topped up to exactly the required amount."""
    gateway = make_gateway(allowance=10)
    on_signed = Mock()

    tx_hash = ApprovalManager(gateway).ensure_approval(
        TOKEN_IN, ROUTER, 1_000_000, on_signed=on_signed
    )

    assert tx_hash == "0xapprove"
    gateway.build_approve.assert_called_once_with(TOKEN_IN, ROUTER, 1_000_000)
    gateway.submit.assert_called_once_with(gateway.build_approve.return_value, on_signed=on_signed)
    gateway.wait_for_confirmation.assert_called_once_with("0xapprove")


def test_approval_uses_given_owner():
    """Test allowances are read for an explicit owner."""
    gateway = make_gateway(allowance=5)

    ApprovalManager(gateway).ensure_approval(TOKEN_IN, ROUTER, 1, owner_address=USER)

    gateway.read_allowance.assert_called_once_with(TOKEN_IN, USER, ROUTER)


@pytest.mark.parametrize(
    "error",
    [
        TransactionReverted("0xapprove"),
        ChainTimeout("0xapprove", 180),
        ConnectionError("node reset"),
        ExternalServiceError("node unavailable"),
    ],
)
def test_unconfirmed_approval_fails(error):
    """Test a reverted, timed out or unwatchable approval becomes ApprovalFailed with its hash."""
    gateway = make_gateway(allowance=0)
    gateway.wait_for_confirmation.side_effect = error

    with pytest.raises(ApprovalFailed) as exc_info:
        ApprovalManager(gateway).ensure_approval(TOKEN_IN, ROUTER, 1_000_000)
    assert exc_info.value.tx_hash == "0xapprove"


def test_rejected_approval_fails():
    """Test a node rejection becomes ApprovalFailed."""
    gateway = make_gateway(allowance=0)
    gateway.submit.side_effect = SubmissionFailed("underpriced", tx_hash="0xrejected")

    with pytest.raises(ApprovalFailed) as exc_info:
        ApprovalManager(gateway).ensure_approval(TOKEN_IN, ROUTER, 1_000_000)
    assert exc_info.value.tx_hash == "0xrejected"
    gateway.wait_for_confirmation.assert_not_called()


def test_approval_submission_transport_failure():
    """Test a node outage while preparing the approve is ApprovalFailed."""
    gateway = make_gateway(allowance=0)
    gateway.submit.side_effect = ExternalServiceError("node unavailable during read nonce")

    with pytest.raises(ApprovalFailed, match="node unavailable"):
        ApprovalManager(gateway).ensure_approval(TOKEN_IN, ROUTER, 1_000_000)
    gateway.wait_for_confirmation.assert_not_called()


def test_await_approval_waits_for_recorded_hash():
    """Test a recorded approval is watched, never signed again."""
    gateway = make_gateway(allowance=0)

    tx_hash = ApprovalManager(gateway).await_approval(TOKEN_IN, ROUTER, 1_000_000, "0xrecorded")

    assert tx_hash == "0xrecorded"
    gateway.wait_for_confirmation.assert_called_once_with("0xrecorded")
    gateway.build_approve.assert_not_called()
    gateway.submit.assert_not_called()


def test_await_approval_already_mined():
    """Test an approval mined while unobserved is accepted from the allowance."""
    gateway = make_gateway(allowance=1_000_000)

    tx_hash = ApprovalManager(gateway).await_approval(TOKEN_IN, ROUTER, 1_000_000, "0xrecorded")

    assert tx_hash == "0xrecorded"
    gateway.wait_for_confirmation.assert_not_called()
    gateway.submit.assert_not_called()


def test_await_approval_reverted():
    """Test a recorded approval that reverted fails without a new approval."""
    gateway = make_gateway(allowance=0)
    gateway.wait_for_confirmation.side_effect = TransactionReverted("0xrecorded")

    with pytest.raises(ApprovalFailed) as exc_info:
        ApprovalManager(gateway).await_approval(TOKEN_IN, ROUTER, 1_000_000, "0xrecorded")
    assert exc_info.value.tx_hash == "0xrecorded"
    gateway.submit.assert_not_called()


def test_parse_quote():
    """Test a complete mint payload becomes a quote."""
    quote = MintCoordinator.parse_quote(mint_payload(amount_out=990_000))

    assert quote.transaction_target == ROUTER
    assert quote.transaction_data.startswith("0xc81f847a")
    assert quote.transaction_value == 0
    assert quote.expected_amount_out == 990_000
    assert quote.price_impact == pytest.approx(-0.0004)


def test_parse_quote_pt_amount_fallback():
    """Test amountPtOut is used when amountOut is absent."""
    payload = {"tx": {"to": ROUTER, "data": "0x01"}, "data": {"amountPtOut": "7"}}
    assert MintCoordinator.parse_quote(payload).expected_amount_out == 7


@pytest.mark.parametrize(
    "payload",
    [
        None,
        "not an object",
        {},
        {"tx": "0x"},
        {"tx": {"data": "0x01"}},
        {"tx": {"to": "", "data": "0x01"}},
        {"tx": {"to": ROUTER}},
        {"tx": {"to": ROUTER, "data": "0x"}},
        {"tx": {"to": "definitely-not-an-address", "data": "0xabcdef"}},
        {"tx": {"to": "0x1234", "data": "0xabcdef"}},
        {"tx": {"to": ROUTER, "data": "c81f847a"}},
        {"tx": {"to": ROUTER, "data": "0xnothex"}},
        {"tx": {"to": ROUTER, "data": "0xabc"}},
    ],
)
def test_parse_quote_rejects_incomplete_payloads(payload):
    """Test quotes without an address target or hex calldata are invalid."""
    with pytest.raises(InvalidQuote):
        MintCoordinator.parse_quote(payload)


def test_quote_mint_requests_market_yield_token():
    """Test the mint request names the market's YT and the receiver."""
    client = Mock()
    client.get_mint_transaction.return_value = mint_payload()
    market = make_market()

    quote = MintCoordinator(client).quote_mint(market, TOKEN_IN, 1_000_000, 0.01, USER)

    assert quote.transaction_target == ROUTER
    client.get_mint_transaction.assert_called_once_with(
        yt_address=YT,
        token_in=TOKEN_IN,
        amount_in=1_000_000,
        slippage=0.01,
        receiver=USER,
    )
