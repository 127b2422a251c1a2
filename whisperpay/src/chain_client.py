"""
Parent Chain Client

Holds the single Web3 connection and operator account used for every
parent-chain read, event filter and transaction the service makes.
"""

import json
import logging
import os
import threading
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from web3 import Web3

from whisperpay.src.errors import (
    ConfigurationError,
    FeeQuoteUnavailable,
    SubmissionError,
)
from whisperpay.src.fee_estimator import FeeEstimator
from whisperpay.src.models import ParentChain

logger = logging.getLogger(__name__)

_THIS_DIR = os.path.dirname(__file__)
_PACKAGE_ROOT = os.path.abspath(os.path.join(_THIS_DIR, os.pardir))
_ABIS_DIR = os.path.join(_PACKAGE_ROOT, "abis")

with open(os.path.join(_ABIS_DIR, "dealer_abi.json"), "r", encoding="utf-8") as f:
    DEALER_ABI = json.load(f)

with open(os.path.join(_ABIS_DIR, "inbox_abi.json"), "r", encoding="utf-8") as f:
    INBOX_ABI = json.load(f)


class ParentChainClient:
    """
    Client for the parent chain

    This client provides methods for:
    - Chain id discovery against the supported parent chain table
    - Fee inputs (base fee, legacy gas price)
    - Contract calls and plain value transfers, signed by the operator key
    - Contract event filters

    Outgoing transactions are serialized through one lock that hands out
    nonces locally, so concurrent handlers never reuse a nonce.
    """

    def __init__(
        self,
        web3_provider: Optional[str],
        private_key: Optional[str],
        chain_lookup: Callable[[int], ParentChain],
        web3: Optional[Web3] = None,
        fee_estimator: Optional[FeeEstimator] = None,
    ):
        """
        Initialize the Parent Chain Client

        Args:
            web3_provider: RPC URL for the parent chain
            private_key: Operator key, with or without 0x prefix
            chain_lookup: Maps a live chain id to its parameters, raising
                UnsupportedChainError for ids outside the supported set
            web3: Pre-built Web3 instance (skips provider construction)
            fee_estimator: Fee policy used for plain value transfers
        """
        if web3 is None and not web3_provider:
            raise ConfigurationError("Missing parent chain RPC URL")
        if not private_key:
            raise ConfigurationError("Missing deployer private key")

        self.web3 = web3 or Web3(Web3.HTTPProvider(web3_provider))
        key = private_key if private_key.startswith("0x") else f"0x{private_key}"
        try:
            self.account = Account.from_key(key)
        except Exception as e:
            raise ConfigurationError(f"Invalid deployer private key: {e}")

        self.chain_lookup = chain_lookup
        self.fee_estimator = fee_estimator or FeeEstimator()
        self._chain_id: Optional[int] = None
        self._submit_lock = threading.Lock()
        self._next_nonce: Optional[int] = None

    @property
    def address(self) -> str:
        return self.account.address

    # ==================== CHAIN DISCOVERY ====================

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = int(self.web3.eth.chain_id)
        return self._chain_id

    def resolve_parent_chain(self) -> ParentChain:
        """Look up the live network id in the supported parent chain table."""
        return self.chain_lookup(self.chain_id)

    # ==================== FEES ====================

    def fee_inputs(self) -> Tuple[Optional[int], Optional[int]]:
        """
        Read the current fee inputs

        Returns:
            (base_fee, None) when the latest block exposes baseFeePerGas,
            (None, gas_price) when only a legacy gas price is available,
            (None, None) when neither could be read
        """
        try:
            latest_block = self.web3.eth.get_block("latest")
            base_fee = latest_block.get("baseFeePerGas")
        except Exception as e:
            logger.warning(f"Could not read latest block base fee: {e}")
            base_fee = None

        if base_fee is not None:
            return int(base_fee), None

        try:
            return None, int(self.web3.eth.gas_price)
        except Exception as e:
            logger.warning(f"Could not read gas price: {e}")
            return None, None

    # ==================== CONTRACTS ====================

    def contract(self, address: str, abi: list):
        return self.web3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    def event_filter(self, address: str, abi: list, event_name: str):
        """Install a log filter for new events of one contract event."""
        event = self.contract(address, abi).events[event_name]
        return event.create_filter(from_block="latest")

    def uninstall_filter(self, event_filter) -> bool:
        filter_id = getattr(event_filter, "filter_id", None)
        if filter_id is None:
            return False
        return bool(self.web3.eth.uninstall_filter(filter_id))

    # ==================== TRANSACTIONS ====================

    def call_contract(
        self,
        address: str,
        abi: list,
        function_name: str,
        *args: Any,
        value: int = 0,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Sign and broadcast a contract call

        Returns:
            Transaction hash as a 0x-prefixed hex string
        """
        function = getattr(self.contract(address, abi).functions, function_name)(*args)
        params = {"from": self.account.address, "value": value, **(overrides or {})}

        def build(nonce: int) -> dict:
            return function.build_transaction(
                {**params, "nonce": nonce, "chainId": self.chain_id}
            )

        tx_hash = self._submit(build)
        logger.info(f"{function_name} submitted to {address} | tx={tx_hash}")
        return tx_hash

    def send_value(self, to: str, amount_wei: int) -> str:
        """Send a plain value transfer from the operator account."""
        recipient = Web3.to_checksum_address(to)
        base_fee, gas_price = self.fee_inputs()
        if base_fee is None and gas_price is None:
            raise FeeQuoteUnavailable("Neither base fee nor gas price is available")

        def build(nonce: int) -> dict:
            tx = {
                "from": self.account.address,
                "to": recipient,
                "value": amount_wei,
                "nonce": nonce,
                "chainId": self.chain_id,
            }
            tx["gas"] = self.web3.eth.estimate_gas(
                {"from": self.account.address, "to": recipient, "value": amount_wei}
            )
            if base_fee is not None:
                max_fee, max_priority = self.fee_estimator.fee_caps(base_fee)
                tx["maxFeePerGas"] = max_fee
                tx["maxPriorityFeePerGas"] = max_priority
            else:
                tx["gasPrice"] = gas_price
            return tx

        tx_hash = self._submit(build)
        logger.info(f"Value transfer of {amount_wei} wei to {recipient} | tx={tx_hash}")
        return tx_hash

    def _submit(self, build: Callable[[int], dict]) -> str:
        with self._submit_lock:
            try:
                if self._next_nonce is None:
                    self._next_nonce = self.web3.eth.get_transaction_count(
                        self.account.address, "pending"
                    )
                nonce = self._next_nonce
                tx = build(nonce)
                signed_tx = self.account.sign_transaction(tx)
                tx_hash = self.web3.eth.send_raw_transaction(signed_tx.raw_transaction)
            except Exception as e:
                # the node is the source of truth again after any failure
                self._next_nonce = None
                raise SubmissionError(str(e)) from e

            self._next_nonce = nonce + 1
            return Web3.to_hex(tx_hash)
