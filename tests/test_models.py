"""Tests for data models."""

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conftest import PT, make_market, make_request
from stakestore.models.enums import TERMINAL_PHASES, RequestSource, WorkflowPhase
from stakestore.models.holding import Holding
from stakestore.models.market import Market, split_pendle_id
from stakestore.models.stake import StakeRequest, StakeWorkflowState
from stakestore.models.transaction import MintQuote, TransactionDescriptor, TransactionReceipt


def test_split_pendle_id():
    """Test chain-prefixed ids are reduced to the address."""
    assert split_pendle_id("8453-0xabc") == "0xabc"
    assert split_pendle_id("0xabc") == "0xabc"
    assert split_pendle_id("") == ""


def test_market_from_api_entry():
    """Test parsing an active-markets entry with chain-prefixed ids and ISO expiry."""
    market = Market.from_api(
        {
            "name": "sUSDe",
            "address": "0xpool",
            "pt": "8453-0xpt",
            "yt": "8453-0xyt",
            "underlyingAsset": "8453-0xunderlying",
            "expiry": "2026-12-31T00:00:00.000Z",
            "details": {"impliedApy": 0.0831},
        }
    )

    assert market.pool_id == "0xpool"
    assert market.principal_token_address == "0xpt"
    assert market.yield_token_address == "0xyt"
    assert market.underlying_asset == "0xunderlying"
    assert market.expiry == datetime(2026, 12, 31, tzinfo=timezone.utc)
    assert market.annualized_yield_estimate == pytest.approx(0.0831)


def test_market_from_api_unix_expiry():
    """Test numeric expiries are read as unix seconds."""
    market = Market.from_api({"address": "0xpool", "pt": "0xpt", "yt": "0xyt", "expiry": 1_800_000_000})
    assert market.expiry == datetime.fromtimestamp(1_800_000_000, tz=timezone.utc)
    assert market.annualized_yield_estimate is None


def test_market_from_api_missing_fields():
    """Test entries without pt/yt/expiry are rejected."""
    with pytest.raises(ValueError):
        Market.from_api({"address": "0xpool", "pt": "0xpt"})

    with pytest.raises(ValueError):
        Market.from_api(["not", "a", "dict"])


def test_market_is_matured():
    """Test maturity is judged against the given time."""
    expiry = datetime(2026, 6, 1, tzinfo=timezone.utc)
    market = make_market(expiry=expiry)

    assert not market.is_matured(expiry - timedelta(seconds=1))
    assert market.is_matured(expiry)


def test_market_is_frozen():
    """Test markets cannot be mutated in place."""
    market = make_market()
    with pytest.raises(ValidationError):
        market.name = "other"


def test_stake_request_defaults():
    """Test StakeRequest default values."""
    request = make_request()
    assert request.source == RequestSource.API
    assert request.created_at.tzinfo is not None

    generated = StakeRequest(
        user_address=request.user_address,
        input_token_address=request.input_token_address,
        input_amount=1,
        target_market=request.target_market,
    )
    assert generated.request_id
    assert generated.slippage_tolerance == 0.01


def test_workflow_state_transition():
    """Test transitions keep the last error and bump updated_at."""
    state = StakeWorkflowState(request_id="req-1")
    assert state.phase == WorkflowPhase.INTAKE
    before = state.updated_at

    state.transition(WorkflowPhase.QUOTE_FAILED, "no target")

    assert state.phase == WorkflowPhase.QUOTE_FAILED
    assert state.last_error == "no target"
    assert state.updated_at >= before
    assert state.is_terminal


def test_workflow_state_attempts():
    """Test attempt counters are kept per step."""
    state = StakeWorkflowState(request_id="req-1")
    assert state.record_attempt("quote") == 1
    assert state.record_attempt("quote") == 2
    assert state.record_attempt("approval") == 1
    assert state.attempts == {"quote": 2, "approval": 1}


def test_phase_classification():
    """Test terminal and pre-submission phases."""
    assert WorkflowPhase.RECORDED.is_terminal
    assert WorkflowPhase.UNCONFIRMED.is_terminal
    assert WorkflowPhase.CANCELLED in TERMINAL_PHASES
    assert not WorkflowPhase.CONFIRMED.is_terminal
    assert not WorkflowPhase.MINT_SUBMITTED.is_terminal

    assert WorkflowPhase.MINT_QUOTED.is_pre_submission
    assert not WorkflowPhase.MINT_SUBMITTED.is_pre_submission


def test_holding_requires_positive_balance():
    """Test a holding with no balance cannot be built."""
    expiry = datetime(2027, 1, 1, tzinfo=timezone.utc)
    holding = Holding(
        market_id="0xpool",
        user_address="0xuser",
        principal_token_address=PT,
        principal_token_balance=10**30,
        expiry=expiry,
    )
    assert holding.principal_token_balance == 10**30

    with pytest.raises(ValidationError):
        Holding(
            market_id="0xpool",
            user_address="0xuser",
            principal_token_address=PT,
            principal_token_balance=0,
            expiry=expiry,
        )


def test_transaction_descriptor_to_dict():
    """Test rendering for a wallet."""
    tx = TransactionDescriptor(to="0xto", data="0x1234", value=5, from_address="0xfrom", chain_id=8453)
    assert tx.to_dict() == {
        "to": "0xto",
        "data": "0x1234",
        "value": "5",
        "from": "0xfrom",
        "chainId": 8453,
    }

    bare = TransactionDescriptor(to="0xto", data="0x")
    assert bare.to_dict() == {"to": "0xto", "data": "0x", "value": "0"}


def test_mint_quote_to_transaction():
    """Test a quote becomes an unsigned call to its target."""
    quote = MintQuote(transaction_target="0xrouter", transaction_data="0xabcd", transaction_value=3)
    tx = quote.to_transaction()
    assert tx.to == "0xrouter"
    assert tx.data == "0xabcd"
    assert tx.value == 3


def test_receipt_succeeded():
    """Test receipt status interpretation."""
    assert TransactionReceipt(transaction_hash="0x1", block_number=1, status=1).succeeded
    assert not TransactionReceipt(transaction_hash="0x1", block_number=1, status=0).succeeded
