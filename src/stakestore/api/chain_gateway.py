"""Chain gateway: the node connection and the signing key behind one object."""

import logging
import threading
from typing import Any, Callable, Optional

from eth_account import Account
from eth_account.signers.local import LocalAccount
from web3 import Web3
from web3.exceptions import (
    ContractLogicError,
    TimeExhausted,
    TransactionNotFound,
    Web3Exception,
)

from stakestore.api.abis import ERC20_ABI, STAKE_STORE_ABI
from stakestore.config.settings import StakeStoreConfig
from stakestore.core.exceptions import (
    ChainTimeout,
    ExternalServiceError,
    SubmissionFailed,
    TransactionReverted,
)
from stakestore.models.transaction import TransactionDescriptor, TransactionReceipt
from stakestore.utils.retry import exponential_backoff, with_retries

SignedCallback = Callable[[str], None]


def _is_transport_error(error: Exception) -> bool:
    # requests' exceptions derive from IOError
    return isinstance(error, OSError)


class ChainGateway:
    """Submits signed contract calls, waits for receipts and reads token state.

    ``submit`` is the only method that spends gas. Nonce assignment, signing and
    broadcast happen under one lock, so concurrent workflows sharing the signer
    never race on nonces.
    """

    GAS_LIMIT_BUFFER = 1.2

    def __init__(
        self,
        config: StakeStoreConfig,
        w3: Optional[Web3] = None,
        account: Optional[LocalAccount] = None,
        logger: Optional[logging.Logger] = None,
    ):
        """Initialize chain gateway.

        Args:
            config: StakeStore configuration
            w3: Optional Web3 instance (defaults to an HTTP provider on ``config.rpc_url``)
            account: Optional signer (defaults to ``config.private_key``)
            logger: Optional logger instance
        """
        self.config = config
        self.chain_id = config.chain_id
        self.logger = logger or logging.getLogger(__name__)
        self.w3 = w3 or Web3(Web3.HTTPProvider(config.rpc_url))
        self.account = account or Account.from_key(config.private_key)

        self._codec = Web3()
        self._submit_lock = threading.Lock()
        self._retry_wait = exponential_backoff(config.retry_backoff_seconds)

    @property
    def address(self) -> str:
        """Signer address."""
        return self.account.address

    def _read(self, action: Callable[[], Any], action_name: str) -> Any:
        """Run an idempotent node read with bounded retries on transport errors."""
        try:
            return with_retries(
                action,
                action_name=action_name,
                max_retries=self.config.max_retries,
                retry_wait_fn=self._retry_wait,
                is_retryable=_is_transport_error,
                logger=self.logger,
            )
        except OSError as e:
            raise ExternalServiceError(f"Node unavailable during {action_name}: {e}") from e

    def _erc20(self, token_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)

    # ---------------------------
    # Reads
    # ---------------------------

    def read_balance(self, token_address: str, owner_address: str) -> int:
        """Read an ERC-20 balance in smallest units."""
        owner = Web3.to_checksum_address(owner_address)
        return int(
            self._read(
                lambda: self._erc20(token_address).functions.balanceOf(owner).call(),
                action_name="read balance",
            )
        )

    def read_allowance(self, token_address: str, owner_address: str, spender: str) -> int:
        """Read how much ``spender`` may move of ``owner_address``'s tokens."""
        owner = Web3.to_checksum_address(owner_address)
        spender = Web3.to_checksum_address(spender)
        return int(
            self._read(
                lambda: self._erc20(token_address).functions.allowance(owner, spender).call(),
                action_name="read allowance",
            )
        )

    def gas_parameters(self) -> dict[str, int]:
        """Current fee parameters, EIP-1559 when the chain reports a base fee."""
        multiplier = self.config.gas_price_multiplier
        latest = self._read(lambda: self.w3.eth.get_block("latest"), action_name="read block")
        base_fee = latest.get("baseFeePerGas") if latest else None

        if base_fee is not None:
            priority = int(
                self._read(lambda: self.w3.eth.max_priority_fee, action_name="read priority fee")
            )
            max_fee = int((2 * int(base_fee) + priority) * multiplier)
            return {"maxFeePerGas": max_fee, "maxPriorityFeePerGas": priority}

        gas_price = int(self._read(lambda: self.w3.eth.gas_price, action_name="read gas price"))
        return {"gasPrice": max(1, int(gas_price * multiplier))}

    def block_number(self) -> int:
        return int(self._read(lambda: self.w3.eth.block_number, action_name="read block number"))

    def get_receipt(self, tx_hash: str) -> Optional[TransactionReceipt]:
        """Look up a receipt once without waiting. None if not mined (or unknown)."""

        def _action():
            try:
                return self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None

        receipt = self._read(_action, action_name="read receipt")
        return self._to_receipt(receipt) if receipt is not None else None

    # ---------------------------
    # Encoding
    # ---------------------------

    def build_approve(self, token_address: str, spender: str, amount: int) -> TransactionDescriptor:
        """Encode ``approve(spender, amount)`` on a token."""
        contract = self._codec.eth.contract(abi=ERC20_ABI)
        data = contract.encode_abi("approve", args=[Web3.to_checksum_address(spender), amount])
        return TransactionDescriptor(
            to=Web3.to_checksum_address(token_address), data=data, chain_id=self.chain_id
        )

    def build_stake_tokens(
        self, stake_store_address: str, token: str, amount: int, pool: str, sender: str
    ) -> TransactionDescriptor:
        """Encode ``stakeTokens(token, amount, pool)`` on the StakeStore contract."""
        contract = self._codec.eth.contract(abi=STAKE_STORE_ABI)
        data = contract.encode_abi(
            "stakeTokens",
            args=[Web3.to_checksum_address(token), amount, Web3.to_checksum_address(pool)],
        )
        return TransactionDescriptor(
            to=Web3.to_checksum_address(stake_store_address),
            data=data,
            from_address=Web3.to_checksum_address(sender),
            chain_id=self.chain_id,
        )

    # ---------------------------
    # Writes
    # ---------------------------

    def _prepare(self, tx: TransactionDescriptor) -> dict[str, Any]:
        if not Web3.is_address(tx.to):
            raise SubmissionFailed(f"Transaction target {tx.to!r} is not an address")
        params: dict[str, Any] = {
            "from": self.address,
            "to": Web3.to_checksum_address(tx.to),
            "data": tx.data,
            "value": tx.value,
            "chainId": self.chain_id,
            "nonce": self._read(
                lambda: self.w3.eth.get_transaction_count(self.address, "pending"),
                action_name="read nonce",
            ),
        }
        params.update(self.gas_parameters())

        try:
            estimated = self.w3.eth.estimate_gas(params)
            params["gas"] = int(estimated * self.GAS_LIMIT_BUFFER)
        except ContractLogicError as e:
            raise SubmissionFailed(f"Transaction to {tx.to} would revert: {e}") from e
        except OSError as e:
            raise ExternalServiceError(f"Node unavailable during gas estimation: {e}") from e
        except (Web3Exception, ValueError) as e:
            self.logger.warning(
                f"Gas estimation failed ({e}), using fallback limit {self.config.fallback_gas_limit}"
            )
            params["gas"] = self.config.fallback_gas_limit

        return params

    def submit(
        self,
        tx: TransactionDescriptor,
        on_signed: Optional[SignedCallback] = None,
    ) -> str:
        """Sign and broadcast a transaction.

        ``on_signed`` receives the transaction hash after signing and before
        broadcast, so the caller can durably record it first. If the broadcast
        fails in transport the transaction may still have reached the node; the
        hash is returned and the caller must wait for (or reconcile) it.

        Returns:
            Transaction hash (0x-prefixed)

        Raises:
            SubmissionFailed: If the node rejects the transaction or it would revert
        """
        with self._submit_lock:
            params = self._prepare(tx)
            signed = self.account.sign_transaction(params)
            tx_hash = Web3.to_hex(signed.hash)

            if on_signed:
                on_signed(tx_hash)

            try:
                self.w3.eth.send_raw_transaction(signed.raw_transaction)
            except (Web3Exception, ValueError) as e:
                raise SubmissionFailed(f"Node rejected {tx_hash}: {e}", tx_hash=tx_hash) from e
            except OSError as e:
                self.logger.warning(f"Broadcast of {tx_hash} failed in transport, outcome unknown: {e}")
                return tx_hash

        self.logger.info(f"Submitted {tx_hash} (nonce {params['nonce']}) to {params['to']}")
        return tx_hash

    def wait_for_confirmation(
        self, tx_hash: str, timeout: Optional[float] = None
    ) -> TransactionReceipt:
        """Block until a transaction is mined.

        Raises:
            ChainTimeout: If no receipt appears within the timeout, or the node
                connection fails while polling (the outcome is unknown either way)
            TransactionReverted: If the transaction was mined with a failed status
        """
        timeout = self.config.confirmation_timeout if timeout is None else timeout
        try:
            raw = self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.config.confirmation_poll_interval
            )
        except TimeExhausted as e:
            raise ChainTimeout(tx_hash, timeout) from e
        except (OSError, Web3Exception) as e:
            self.logger.warning(f"Lost the node while waiting for {tx_hash}: {e}")
            raise ChainTimeout(tx_hash, timeout, reason=f"node error while polling: {e}") from e

        receipt = self._to_receipt(raw)
        if not receipt.succeeded:
            raise TransactionReverted(tx_hash)
        return receipt

    # ---------------------------
    # Events
    # ---------------------------

    def fetch_stake_intents(
        self, stake_store_address: str, from_block: int, to_block: int
    ) -> list[dict[str, Any]]:
        """Read ``StakeInitiated`` logs in an inclusive block range."""
        contract = self.w3.eth.contract(
            address=Web3.to_checksum_address(stake_store_address), abi=STAKE_STORE_ABI
        )
        logs = self._read(
            lambda: contract.events.StakeInitiated.get_logs(
                from_block=from_block, to_block=to_block
            ),
            action_name="read stake intents",
        )
        return [
            {
                "user": log["args"]["user"],
                "token": log["args"]["token"],
                "amount": int(log["args"]["amount"]),
                "pool": log["args"]["pool"],
                "transaction_hash": Web3.to_hex(log["transactionHash"]),
                "log_index": int(log["logIndex"]),
                "block_number": int(log["blockNumber"]),
            }
            for log in logs
        ]

    @staticmethod
    def _to_receipt(raw: Any) -> TransactionReceipt:
        return TransactionReceipt(
            transaction_hash=Web3.to_hex(raw["transactionHash"]),
            block_number=int(raw["blockNumber"]),
            status=int(raw["status"]),
            gas_used=int(raw.get("gasUsed", 0)),
        )
