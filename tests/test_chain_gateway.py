"""Tests for the chain gateway with a mocked node and a real signer."""

from unittest.mock import Mock

import pytest
from eth_account import Account
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from conftest import POOL, PRIVATE_KEY, ROUTER, TOKEN_IN, USER
from stakestore.api.chain_gateway import ChainGateway
from stakestore.core.exceptions import (
    ChainTimeout,
    ExternalServiceError,
    SubmissionFailed,
    TransactionReverted,
)
from stakestore.models.transaction import TransactionDescriptor

TX_HASH = bytes.fromhex("ab" * 32)


def make_w3():
    w3 = Mock()
    w3.eth.get_transaction_count.return_value = 7
    w3.eth.get_block.return_value = {"baseFeePerGas": 100}
    w3.eth.max_priority_fee = 2
    w3.eth.gas_price = 10
    w3.eth.estimate_gas.return_value = 100_000
    w3.eth.send_raw_transaction.return_value = TX_HASH
    return w3


def make_gateway(config, w3=None):
    return ChainGateway(config, w3=w3 or make_w3(), account=Account.from_key(PRIVATE_KEY))


def mint_tx():
    return TransactionDescriptor(to=ROUTER, data="0xc81f847a" + "00" * 32)


def test_signer_address(config):
    """Test the gateway exposes the signer's address."""
    gateway = make_gateway(config)
    assert gateway.address == Account.from_key(PRIVATE_KEY).address


def test_submit_records_hash_before_broadcast(config):
    """Test on_signed sees the final hash before the node does."""
    events = []
    w3 = make_w3()
    w3.eth.send_raw_transaction.side_effect = lambda raw: events.append(("sent", raw))
    gateway = make_gateway(config, w3)

    tx_hash = gateway.submit(mint_tx(), on_signed=lambda h: events.append(("signed", h)))

    assert [name for name, _ in events] == ["signed", "sent"]
    assert events[0][1] == tx_hash
    assert tx_hash.startswith("0x") and len(tx_hash) == 66


def test_submit_builds_eip1559_transaction(config):
    """Test nonce, gas limit buffer and fee fields of a prepared transaction."""
    w3 = make_w3()
    gateway = make_gateway(config, w3)

    params = gateway._prepare(mint_tx())

    assert params["nonce"] == 7
    assert params["chainId"] == 8453
    assert params["gas"] == 120_000
    assert params["maxPriorityFeePerGas"] == 2
    assert params["maxFeePerGas"] == 202
    w3.eth.get_transaction_count.assert_called_once_with(gateway.address, "pending")


def test_legacy_gas_price(config):
    """Test chains without a base fee get a legacy gas price."""
    w3 = make_w3()
    w3.eth.get_block.return_value = {}
    gateway = make_gateway(config.model_copy(update={"gas_price_multiplier": 1.5}), w3)

    assert gateway.gas_parameters() == {"gasPrice": 15}


def test_estimate_failure_uses_fallback_limit(config):
    """Test a failed estimate that is not a revert uses the fallback gas limit."""
    w3 = make_w3()
    w3.eth.estimate_gas.side_effect = ValueError("estimate unavailable")
    gateway = make_gateway(config, w3)

    assert gateway._prepare(mint_tx())["gas"] == config.fallback_gas_limit


def test_submit_rejects_reverting_call(config):
    """Test a call that would revert is never signed or sent."""
    w3 = make_w3()
    w3.eth.estimate_gas.side_effect = ContractLogicError("execution reverted")
    gateway = make_gateway(config, w3)
    on_signed = Mock()

    with pytest.raises(SubmissionFailed, match="would revert"):
        gateway.submit(mint_tx(), on_signed=on_signed)

    on_signed.assert_not_called()
    w3.eth.send_raw_transaction.assert_not_called()


def test_submit_node_rejection(config):
    """Test a node rejection carries the signed hash."""
    w3 = make_w3()
    w3.eth.send_raw_transaction.side_effect = ValueError("nonce too low")
    gateway = make_gateway(config, w3)
    hashes = []

    with pytest.raises(SubmissionFailed) as exc_info:
        gateway.submit(mint_tx(), on_signed=hashes.append)

    assert exc_info.value.tx_hash == hashes[0]


def test_submit_transport_failure_returns_hash(config):
    """Test a broadcast lost in transport still returns the hash to confirm."""
    w3 = make_w3()
    w3.eth.send_raw_transaction.side_effect = ConnectionError("reset by peer")
    gateway = make_gateway(config, w3)
    hashes = []

    tx_hash = gateway.submit(mint_tx(), on_signed=hashes.append)

    assert tx_hash == hashes[0]
    assert w3.eth.send_raw_transaction.call_count == 1


def test_wait_for_confirmation(config):
    """Test a mined receipt is converted."""
    w3 = make_w3()
    w3.eth.wait_for_transaction_receipt.return_value = {
        "transactionHash": TX_HASH,
        "blockNumber": 123,
        "status": 1,
        "gasUsed": 90_000,
    }
    gateway = make_gateway(config, w3)

    receipt = gateway.wait_for_confirmation("0x" + "ab" * 32)

    assert receipt.block_number == 123
    assert receipt.transaction_hash == "0x" + "ab" * 32
    assert receipt.succeeded
    _, kwargs = w3.eth.wait_for_transaction_receipt.call_args
    assert kwargs["timeout"] == config.confirmation_timeout


def test_wait_for_confirmation_timeout(config):
    """Test an unmined transaction becomes ChainTimeout."""
    w3 = make_w3()
    w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("not mined")
    gateway = make_gateway(config, w3)

    with pytest.raises(ChainTimeout) as exc_info:
        gateway.wait_for_confirmation("0x01", timeout=5)
    assert exc_info.value.tx_hash == "0x01"
    assert exc_info.value.timeout == 5


def test_wait_for_confirmation_reverted(config):
    """Test a failed status becomes TransactionReverted."""
    w3 = make_w3()
    w3.eth.wait_for_transaction_receipt.return_value = {
        "transactionHash": TX_HASH,
        "blockNumber": 1,
        "status": 0,
    }
    gateway = make_gateway(config, w3)

    with pytest.raises(TransactionReverted):
        gateway.wait_for_confirmation("0x" + "ab" * 32)


@pytest.mark.parametrize(
    "error", [ConnectionError("connection reset"), Web3Exception("bad gateway from node")]
)
def test_wait_for_confirmation_node_failure_is_unknown_outcome(config, error):
    """Test losing the node while polling is reported like a timeout, not raised raw."""
    w3 = make_w3()
    w3.eth.wait_for_transaction_receipt.side_effect = error
    gateway = make_gateway(config, w3)

    with pytest.raises(ChainTimeout, match="node error") as exc_info:
        gateway.wait_for_confirmation("0x01", timeout=5)
    assert exc_info.value.tx_hash == "0x01"
    assert exc_info.value.__cause__ is error


def test_submit_rejects_non_address_target(config):
    """Test a malformed target fails before anything is signed."""
    w3 = make_w3()
    gateway = make_gateway(config, w3)
    hashes = []

    tx = TransactionDescriptor(to="definitely-not-an-address", data="0x01")

    with pytest.raises(SubmissionFailed, match="not an address"):
        gateway.submit(tx, on_signed=hashes.append)

    assert hashes == []
    w3.eth.send_raw_transaction.assert_not_called()


def test_submit_gas_estimation_transport_failure(config):
    """Test a node outage during estimation is a service error and nothing is signed."""
    w3 = make_w3()
    w3.eth.estimate_gas.side_effect = ConnectionError("reset")
    gateway = make_gateway(config, w3)
    hashes = []

    with pytest.raises(ExternalServiceError):
        gateway.submit(mint_tx(), on_signed=hashes.append)

    assert hashes == []


def test_get_receipt_not_found(config):
    """Test an unknown transaction yields no receipt."""
    w3 = make_w3()
    w3.eth.get_transaction_receipt.side_effect = TransactionNotFound("unknown")
    gateway = make_gateway(config, w3)

    assert gateway.get_receipt("0x01") is None


def test_read_balance_retries_transport_errors(config):
    """Test balance reads are retried on connection errors."""
    w3 = make_w3()
    call = w3.eth.contract.return_value.functions.balanceOf.return_value.call
    call.side_effect = [ConnectionError("reset"), 5_000]
    gateway = make_gateway(config, w3)

    assert gateway.read_balance(TOKEN_IN, USER) == 5_000
    assert call.call_count == 2


def test_read_balance_node_unavailable(config):
    """Test exhausted read retries become ExternalServiceError."""
    w3 = make_w3()
    call = w3.eth.contract.return_value.functions.balanceOf.return_value.call
    call.side_effect = ConnectionError("down")
    gateway = make_gateway(config, w3)

    with pytest.raises(ExternalServiceError):
        gateway.read_balance(TOKEN_IN, USER)
    assert call.call_count == config.max_retries


def test_read_allowance(config):
    """Test allowance reads pass checksummed owner and spender."""
    w3 = make_w3()
    allowance = w3.eth.contract.return_value.functions.allowance
    allowance.return_value.call.return_value = 42
    gateway = make_gateway(config, w3)

    assert gateway.read_allowance(TOKEN_IN, USER, ROUTER) == 42
    owner, spender = allowance.call_args[0]
    assert owner.lower() == USER.lower()
    assert spender.lower() == ROUTER.lower()


def test_build_approve_encodes_exact_amount(config):
    """Test approve calldata targets the token with the requested amount."""
    gateway = make_gateway(config)

    tx = gateway.build_approve(TOKEN_IN, ROUTER, 1_000_000)

    assert tx.to.lower() == TOKEN_IN
    assert tx.data.startswith("0x095ea7b3")
    assert tx.data.endswith(f"{1_000_000:064x}")
    assert tx.value == 0


def test_build_stake_tokens(config):
    """Test stakeTokens calldata has a selector and three words."""
    gateway = make_gateway(config)
    stake_store = "0x" + "99" * 20

    tx = gateway.build_stake_tokens(stake_store, TOKEN_IN, 500, POOL, USER)

    assert tx.to.lower() == stake_store
    assert tx.from_address.lower() == USER
    assert tx.chain_id == 8453
    assert len(tx.data) == 2 + 8 + 3 * 64
    assert f"{500:064x}" in tx.data


def test_fetch_stake_intents(config):
    """Test StakeInitiated logs are flattened."""
    w3 = make_w3()
    get_logs = w3.eth.contract.return_value.events.StakeInitiated.get_logs
    get_logs.return_value = [
        {
            "args": {"user": USER, "token": TOKEN_IN, "amount": 10**18, "pool": POOL},
            "transactionHash": TX_HASH,
            "logIndex": 3,
            "blockNumber": 77,
        }
    ]
    gateway = make_gateway(config, w3)

    intents = gateway.fetch_stake_intents("0x" + "99" * 20, 70, 80)

    assert intents == [
        {
            "user": USER,
            "token": TOKEN_IN,
            "amount": 10**18,
            "pool": POOL,
            "transaction_hash": "0x" + "ab" * 32,
            "log_index": 3,
            "block_number": 77,
        }
    ]
    get_logs.assert_called_once_with(from_block=70, to_block=80)
