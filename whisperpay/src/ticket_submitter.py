"""Retryable ticket submission to a rollup inbox contract."""

import logging

from web3 import Web3

from whisperpay.src.chain_client import INBOX_ABI, ParentChainClient
from whisperpay.src.models import FeeQuote

logger = logging.getLogger(__name__)

EMPTY_CALL_DATA = b""


class TicketSubmitter:
    def submit(
        self,
        inbox_address: str,
        recipient: str,
        fee_quote: FeeQuote,
        sender: ParentChainClient,
    ) -> str:
        """
        Send one createRetryableTicket call to the inbox

        Both refund addresses are the sender's own account. Network and
        contract errors propagate unchanged as SubmissionError; nothing is
        retried here.

        Returns:
            Transaction hash of the ticket submission
        """
        refund_address = sender.address
        logger.info(
            f"Submitting retryable ticket | inbox={inbox_address} to={recipient} "
            f"value={fee_quote.total_value} gas={fee_quote.gas_limit} "
            f"maxFeePerGas={fee_quote.max_fee_per_gas}"
        )
        return sender.call_contract(
            inbox_address,
            INBOX_ABI,
            "createRetryableTicket",
            Web3.to_checksum_address(recipient),
            fee_quote.l2_call_value,
            fee_quote.max_submission_cost,
            refund_address,
            refund_address,
            fee_quote.gas_limit,
            fee_quote.max_fee_per_gas,
            EMPTY_CALL_DATA,
            value=fee_quote.total_value,
            overrides={
                "gas": fee_quote.gas_limit,
                "maxFeePerGas": fee_quote.max_fee_per_gas,
                "maxPriorityFeePerGas": fee_quote.max_priority_fee_per_gas,
            },
        )
