"""
Domain records

Users, deployments, pending settlements and the values derived per submission.
Addresses stored here are always the lowercase canonical form.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import Field
from pydantic.dataclasses import dataclass


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SettlementStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class SettlementState(str, Enum):
    """Progress of one job creator through the dealer settlement flow"""

    IDLE = "idle"
    AWAITING_ROUTER_TRANSFER = "awaiting_router_transfer"
    ROUTER_TRANSFER_SUBMITTED = "router_transfer_submitted"
    AWAITING_SETTLEMENT = "awaiting_settlement"
    SETTLEMENT_IN_PROGRESS = "settlement_in_progress"
    COMPLETED = "completed"


class FailureStage(str, Enum):
    ROUTE_FUNDS = "route_funds"
    TRANSFER = "transfer"
    POST_OPS = "post_ops"
    COMPLETE = "complete"
    UNMATCHED_FUNDS = "unmatched_funds"


@dataclass
class UserIdentity:
    user_id: str
    address: str


@dataclass
class ParentChain:
    chain_id: int
    name: str


@dataclass
class Deployment:
    """A provisioned rollup. Append-only, never mutated."""

    user_id: str
    owner: str
    chain_id: int
    tx_hash: str
    core_contracts: Dict[str, str]
    created_at: datetime


@dataclass
class PaymentItem:
    recipient: str
    amount: str  # decimal ETH string, e.g. "0.01"


@dataclass
class PendingSettlement:
    """A batch of payments owed by a user, paid out by the orchestrator"""

    settlement_id: str
    user_id: str
    owner: str
    items: List[PaymentItem]
    status: SettlementStatus = SettlementStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    # ids of the stored batches merged into this view, oldest first
    settlement_ids: List[str] = Field(default_factory=list)


@dataclass
class FeeQuote:
    """Values attached to one retryable ticket, all in wei / gas units"""

    l2_call_value: int
    max_submission_cost: int
    gas_limit: int
    max_fee_per_gas: int
    max_priority_fee_per_gas: int
    total_value: int


@dataclass
class SealedPayload:
    algo: str
    iv: str  # base64
    tag: str  # base64
    ciphertext: str  # base64

    def as_message(self) -> str:
        return f"{self.iv}:{self.tag}:{self.ciphertext}"


@dataclass
class ProvisionResult:
    tx_hash: str
    core_contracts: Dict[str, str]


@dataclass
class FailureRecord:
    """A swallowed background failure, kept for reconciliation"""

    creator: Optional[str]
    stage: FailureStage
    error: str
    target: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


@dataclass
class CorrelationEntry:
    """A job creator whose router transfer went out and whose funds are awaited"""

    entry_id: str
    creator: str
    enqueued_at: datetime = Field(default_factory=utcnow)
