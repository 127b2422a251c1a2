"""
Retryable Ticket Fee Estimator

Computes the gas limit, submission cost, fee caps and total value attached to
a parent-chain -> rollup message from the current network base fee.
"""

from typing import Optional, Tuple

from whisperpay.src.errors import FeeQuoteUnavailable, ValidationError
from whisperpay.src.models import FeeQuote


class FeeEstimator:
    """
    Fee policy for retryable tickets

    - priority fee: a tenth of the base fee, never below 0.01 gwei
    - max fee per gas: twice the base fee plus the priority fee
    - gas limit: fixed headroom
    - submission cost: base fee (at least 1 wei) times call data length plus
      a 5000 byte buffer, so state growth is covered even for empty call data
    """

    GAS_LIMIT = 1_500_000
    MIN_PRIORITY_FEE = 10_000_000  # 0.01 gwei
    SUBMISSION_BUFFER_BYTES = 5000

    def __init__(
        self,
        gas_limit: int = GAS_LIMIT,
        min_priority_fee: int = MIN_PRIORITY_FEE,
        submission_buffer_bytes: int = SUBMISSION_BUFFER_BYTES,
    ):
        if gas_limit <= 0:
            raise ValueError("gas_limit must be positive")
        self.gas_limit = gas_limit
        self.min_priority_fee = min_priority_fee
        self.submission_buffer_bytes = submission_buffer_bytes

    @staticmethod
    def select_base(
        current_base_fee: Optional[int], current_gas_price: Optional[int]
    ) -> int:
        """Base fee when the chain exposes one, legacy gas price otherwise."""
        base = current_base_fee if current_base_fee is not None else current_gas_price
        if base is None:
            raise FeeQuoteUnavailable("Neither base fee nor gas price is available")
        base = int(base)
        if base < 0:
            raise ValidationError("base fee must not be negative")
        return base

    def fee_caps(self, base: int) -> Tuple[int, int]:
        """Return (max_fee_per_gas, max_priority_fee_per_gas) for a base fee."""
        priority = max(base // 10, self.min_priority_fee)
        return base * 2 + priority, priority

    def quote(
        self,
        amount_to_deliver: int,
        call_data_length: int,
        current_base_fee: Optional[int],
        current_gas_price: Optional[int] = None,
    ) -> FeeQuote:
        if amount_to_deliver < 0:
            raise ValidationError("amount must not be negative")
        if call_data_length < 0:
            raise ValidationError("call data length must not be negative")

        base = self.select_base(current_base_fee, current_gas_price)
        max_fee_per_gas, priority = self.fee_caps(base)
        max_submission_cost = max(base, 1) * (
            call_data_length + self.submission_buffer_bytes
        )
        total_value = (
            amount_to_deliver + max_submission_cost + self.gas_limit * max_fee_per_gas
        )

        return FeeQuote(
            l2_call_value=amount_to_deliver,
            max_submission_cost=max_submission_cost,
            gas_limit=self.gas_limit,
            max_fee_per_gas=max_fee_per_gas,
            max_priority_fee_per_gas=priority,
            total_value=total_value,
        )
