from whisperpay.src.bridge_service import BridgeService
from whisperpay.src.chain_client import ParentChainClient
from whisperpay.src.chain_identity import derive_chain_id, normalize_address
from whisperpay.src.correlation_queue import CorrelationQueue, DequeuePolicy
from whisperpay.src.deployment_service import DeploymentService
from whisperpay.src.fee_estimator import FeeEstimator
from whisperpay.src.ledger import Ledger, LocalLedger
from whisperpay.src.payload_sealer import PayloadSealer
from whisperpay.src.rollup_provisioner import (
    HttpRollupProvisioner,
    MockRollupProvisioner,
    RollupProvisioner,
)
from whisperpay.src.settlement_orchestrator import SettlementOrchestrator
from whisperpay.src.ticket_submitter import TicketSubmitter
