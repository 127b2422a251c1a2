"""
Bridge Service

Moves ETH from the parent chain onto the latest rollup by submitting a
retryable ticket to the rollup's inbox.
"""

import logging
from typing import Callable, Dict, Optional

from web3 import Web3

from whisperpay.src.chain_client import ParentChainClient
from whisperpay.src.chain_identity import normalize_address
from whisperpay.src.errors import ValidationError
from whisperpay.src.fee_estimator import FeeEstimator
from whisperpay.src.ledger import Ledger
from whisperpay.src.ticket_submitter import TicketSubmitter
from whisperpay.src.units import parse_ether

logger = logging.getLogger(__name__)

SUPPORTED_TOKENS = ("eth",)


class BridgeService:
    def __init__(
        self,
        chain_client: Callable[[], ParentChainClient],
        ledger: Ledger,
        fee_estimator: Optional[FeeEstimator] = None,
        ticket_submitter: Optional[TicketSubmitter] = None,
    ):
        """
        Args:
            chain_client: Returns the parent chain client, raising
                ConfigurationError when RPC or key are not configured
            ledger: Source of the latest deployment and its inbox
        """
        self.chain_client = chain_client
        self.ledger = ledger
        self.fee_estimator = fee_estimator or FeeEstimator()
        self.ticket_submitter = ticket_submitter or TicketSubmitter()

    def bridge(self, token: str, amount: str, recipient: str) -> Dict:
        if (token or "").strip().lower() not in SUPPORTED_TOKENS:
            raise ValidationError("Only ETH supported currently")
        l2_call_value = parse_ether(amount)
        to = normalize_address(recipient)

        latest = self.ledger.latest_deployment()
        if latest is None:
            raise ValidationError("No L3 deployment found")
        inbox = latest.core_contracts.get("inbox")
        if not inbox:
            raise ValidationError("Inbox address not found")
        inbox = normalize_address(inbox)

        client = self.chain_client()
        parent_chain = client.resolve_parent_chain()

        base_fee, gas_price = client.fee_inputs()
        fee_quote = self.fee_estimator.quote(
            amount_to_deliver=l2_call_value,
            call_data_length=0,
            current_base_fee=base_fee,
            current_gas_price=gas_price,
        )
        logger.info(
            f"Bridging {amount} ETH to {to} on L3 {latest.chain_id} via {parent_chain.name} "
            f"| total_value={fee_quote.total_value}"
        )

        tx_hash = self.ticket_submitter.submit(
            Web3.to_checksum_address(inbox), to, fee_quote, client
        )

        return {
            "submissionStatus": "submitted",
            "l3ChainId": str(latest.chain_id),
            "inbox": Web3.to_checksum_address(inbox),
            "txHash": tx_hash,
        }
