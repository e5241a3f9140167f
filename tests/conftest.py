"""Shared fixtures: a scripted chain gateway, markets and a temporary workflow store."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from stakestore.config.settings import StakeStoreConfig
from stakestore.core.approval_manager import ApprovalManager
from stakestore.core.market_catalog import MarketCatalog
from stakestore.core.mint_coordinator import MintCoordinator
from stakestore.core.persistence import WorkflowDatabase
from stakestore.core.stake_orchestrator import StakeOrchestrator
from stakestore.models.market import Market
from stakestore.models.stake import StakeRequest
from stakestore.models.transaction import TransactionDescriptor, TransactionReceipt

SIGNER = "0x" + "a1" * 20
USER = "0x" + "b2" * 20
TOKEN_IN = "0x" + "c3" * 20
POOL = "0x" + "d4" * 20
PT = "0x" + "e5" * 20
YT = "0x" + "f6" * 20
UNDERLYING = "0x" + "07" * 20
ROUTER = "0x888888888889758F76e7103c6CbF23ABbF58F946"
PRIVATE_KEY = "4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


class FakeGateway:
    """Chain gateway double that signs nothing and records every submission."""

    def __init__(self, allowance=0, balances=None):
        self.address = SIGNER
        self.chain_id = 8453
        self.allowance = allowance
        self.balances = dict(balances or {})
        self.balance_error = None
        self.submit_error = None
        self.confirm_errors = {}
        self.receipts = {}
        self.signed = []
        self.broadcast = []
        self.waited = []

    def read_allowance(self, token_address, owner_address, spender):
        return self.allowance

    def read_balance(self, token_address, owner_address):
        if self.balance_error is not None:
            raise self.balance_error
        return self.balances.get(token_address.lower(), 0)

    def build_approve(self, token_address, spender, amount):
        return TransactionDescriptor(to=token_address, data="0x095ea7b3" + f"{amount:064x}")

    def submit(self, tx, on_signed=None):
        tx_hash = "0x" + f"{len(self.signed) + 1:064x}"
        self.signed.append(tx)
        if on_signed:
            on_signed(tx_hash)
        if self.submit_error is not None:
            raise self.submit_error
        self.broadcast.append((tx_hash, tx))
        return tx_hash

    def wait_for_confirmation(self, tx_hash, timeout=None):
        self.waited.append(tx_hash)
        error = self.confirm_errors.get(tx_hash)
        if error is not None:
            raise error
        return TransactionReceipt(transaction_hash=tx_hash, block_number=100, status=1, gas_used=21000)

    def get_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    @property
    def mint_broadcasts(self):
        return [h for h, tx in self.broadcast if tx.to.lower() == ROUTER.lower()]


def mint_payload(amount_out=990_000):
    return {
        "tx": {"to": ROUTER, "data": "0xc81f847a" + "00" * 64, "value": "0"},
        "data": {"amountOut": str(amount_out), "priceImpact": -0.0004},
    }


def make_market(pool=POOL, pt=PT, yt=YT, expiry=None, name="PT-sUSDe"):
    return Market(
        pool_id=pool,
        name=name,
        principal_token_address=pt,
        yield_token_address=yt,
        underlying_asset=UNDERLYING,
        expiry=expiry or datetime.now(timezone.utc) + timedelta(days=90),
        annualized_yield_estimate=0.12,
    )


def make_request(**overrides):
    fields = {
        "request_id": "req-1",
        "user_address": USER,
        "input_token_address": TOKEN_IN,
        "input_amount": 1_000_000,
        "target_market": POOL,
        "slippage_tolerance": 0.01,
    }
    fields.update(overrides)
    return StakeRequest(**fields)


@pytest.fixture
def config(tmp_path):
    return StakeStoreConfig(
        _env_file=None,
        private_key=PRIVATE_KEY,
        rpc_url="http://localhost:8545",
        db_path=str(tmp_path / "stakes.db"),
        retry_backoff_seconds=0.0,
        max_retries=3,
    )


@pytest.fixture
def db(tmp_path):
    return WorkflowDatabase(str(tmp_path / "stakes.db"), logging.getLogger("test"))


@pytest.fixture
def market():
    return make_market()


@pytest.fixture
def catalog(market):
    return MarketCatalog(markets=[market])


@pytest.fixture
def gateway():
    return FakeGateway(allowance=0, balances={PT.lower(): 995_000})


@pytest.fixture
def pendle():
    client = Mock()
    client.get_mint_transaction.return_value = mint_payload()
    return client


@pytest.fixture
def orchestrator(gateway, catalog, pendle, db):
    return StakeOrchestrator(
        gateway=gateway,
        catalog=catalog,
        approvals=ApprovalManager(gateway),
        minter=MintCoordinator(pendle),
        db=db,
        spender=ROUTER,
    )
