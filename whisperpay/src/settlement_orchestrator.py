"""
Dealer Settlement Orchestrator

Watches the dealer contract and drives each job creator through settlement:

1. L3Interaction(jobCreator): route the creator's funds to the router
   (transferToWhisperRouter) and queue the creator as awaiting funds.
2. FundsTransferredToMediator: take the next queued creator, pay out its
   pending transfer items, call postOpsUpdate, and mark the ledger complete.

Background failures never stop a watcher. Each one is logged, written to the
ledger as a FailureRecord, and the affected creator is not retried
automatically; trigger_transfer is the manual recovery path.
"""

import asyncio
import functools
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional

from web3 import Web3

from whisperpay.src.chain_client import DEALER_ABI, ParentChainClient
from whisperpay.src.chain_identity import normalize_address
from whisperpay.src.correlation_queue import CorrelationQueue
from whisperpay.src.errors import ConfigurationError, InvalidAddress
from whisperpay.src.event_subscription import EventSubscription
from whisperpay.src.ledger import Ledger
from whisperpay.src.models import FailureRecord, FailureStage, SettlementState
from whisperpay.src.units import parse_ether

logger = logging.getLogger(__name__)

JOB_CREATED_EVENT = "L3Interaction"
FUNDS_ARRIVED_EVENT = "FundsTransferredToMediator"
ROUTE_FUNDS_FUNCTION = "transferToWhisperRouter"
POST_OPS_FUNCTION = "postOpsUpdate"

# completed creators remembered for state_of, oldest forgotten first
COMPLETED_HISTORY = 1000


def _log_arg(log: Any, name: str):
    try:
        return (log["args"] or {}).get(name)
    except (KeyError, TypeError, AttributeError):
        return None


def _log_tx(log: Any) -> Optional[str]:
    try:
        tx_hash = log["transactionHash"]
    except (KeyError, TypeError):
        return None
    return tx_hash if isinstance(tx_hash, str) else Web3.to_hex(tx_hash)


class SettlementOrchestrator:
    def __init__(
        self,
        chain_client: Optional[ParentChainClient],
        ledger: Ledger,
        dealer_address: Optional[str],
        correlation_queue: Optional[CorrelationQueue] = None,
        poll_interval: float = 4.0,
        completed_history: int = COMPLETED_HISTORY,
    ):
        self.chain_client = chain_client
        self.ledger = ledger
        self.dealer_address = normalize_address(dealer_address) if dealer_address else None
        self.correlation_queue = correlation_queue or CorrelationQueue(ledger=ledger)
        self.poll_interval = poll_interval
        # creators still moving through the flow; completed ones move to self.completed
        self.states: Dict[str, SettlementState] = {}
        self.completed: "OrderedDict[str, None]" = OrderedDict()
        self.completed_history = completed_history
        self.subscriptions: List[EventSubscription] = []

    # ==================== LIFECYCLE ====================

    @property
    def running(self) -> bool:
        return any(sub.running for sub in self.subscriptions)

    async def start(self) -> bool:
        """Start both dealer watchers. Returns False when nothing could start."""
        if self.chain_client is None or not self.dealer_address:
            logger.warning(
                "Settlement orchestrator not started: parent chain client or dealer address missing"
            )
            return False

        try:
            parent_chain = await self._call(self.chain_client.resolve_parent_chain)
        except Exception as e:
            logger.warning(f"Settlement orchestrator not started: {e}")
            return False

        handlers = (
            (JOB_CREATED_EVENT, self.handle_job_created),
            (FUNDS_ARRIVED_EVENT, self.handle_funds_arrived),
        )
        for event_name, handler in handlers:
            subscription = EventSubscription(
                name=event_name,
                install=functools.partial(
                    self.chain_client.event_filter, self.dealer_address, DEALER_ABI, event_name
                ),
                uninstall=self.chain_client.uninstall_filter,
                on_logs=handler,
                poll_interval=self.poll_interval,
            )
            try:
                await subscription.start()
            except Exception as e:
                logger.error(f"Failed to watch {event_name} on {self.dealer_address}: {e}")
                continue
            self.subscriptions.append(subscription)

        logger.info(
            f"Settlement orchestrator watching dealer {self.dealer_address} on {parent_chain.name} "
            f"| subscriptions={[s.name for s in self.subscriptions]} "
            f"order={self.correlation_queue.policy.value}"
        )
        return bool(self.subscriptions)

    async def stop(self):
        subscriptions, self.subscriptions = self.subscriptions, []
        for subscription in subscriptions:
            try:
                await subscription.stop()
            except Exception as e:
                logger.error(f"Failed to stop {subscription.name} watcher: {e}")

    def health(self) -> Dict:
        return {
            "running": self.running,
            "dealer_address": self.dealer_address,
            "subscriptions": {
                sub.name: {
                    "running": sub.running,
                    "batches_handled": sub.batches_handled,
                    "last_error": sub.last_error,
                }
                for sub in self.subscriptions
            },
            "awaiting_funds": len(self.correlation_queue),
            "correlation_order": self.correlation_queue.policy.value,
            "failures": len(self.ledger.failures()),
        }

    def state_of(self, creator: str) -> SettlementState:
        wallet = normalize_address(creator)
        if wallet in self.states:
            return self.states[wallet]
        if wallet in self.completed:
            return SettlementState.COMPLETED
        return SettlementState.IDLE

    def _complete(self, creator: str):
        self.states.pop(creator, None)
        self.completed.pop(creator, None)
        self.completed[creator] = None
        while len(self.completed) > self.completed_history:
            self.completed.popitem(last=False)

    # ==================== HELPERS ====================

    async def _call(self, fn, *args, **kwargs):
        """Run a blocking chain or ledger call in the default executor."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def _fail(self, creator: Optional[str], stage: FailureStage, error, target=None):
        message = str(error) or error.__class__.__name__
        logger.error(f"Settlement {stage.value} failed | creator={creator} target={target}: {message}")
        try:
            await self._call(
                self.ledger.record_failure,
                FailureRecord(creator=creator, stage=stage, error=message, target=target),
            )
        except Exception as e:
            logger.error(f"Could not record settlement failure for {creator}: {e}")

    def _route_funds(self, creator: str) -> str:
        return self.chain_client.call_contract(
            self.dealer_address,
            DEALER_ABI,
            ROUTE_FUNDS_FUNCTION,
            Web3.to_checksum_address(creator),
        )

    # ==================== JOB CREATED ====================

    async def _route_and_enqueue(self, creator: str) -> str:
        """Route funds for a creator and queue it. Errors propagate."""
        self.states[creator] = SettlementState.AWAITING_ROUTER_TRANSFER
        try:
            tx_hash = await self._call(self._route_funds, creator)
            self.states[creator] = SettlementState.ROUTER_TRANSFER_SUBMITTED
            await self._call(self.correlation_queue.enqueue, creator)
        except Exception:
            self.states.pop(creator, None)
            raise
        self.states[creator] = SettlementState.AWAITING_SETTLEMENT
        return tx_hash

    async def handle_job_created(self, logs: List[Any]):
        for log in logs:
            raw_creator = _log_arg(log, "_jobCreator")
            if not raw_creator:
                logger.warning(f"{JOB_CREATED_EVENT} without a job creator | tx={_log_tx(log)}")
                continue
            try:
                creator = normalize_address(raw_creator)
            except InvalidAddress:
                logger.warning(f"{JOB_CREATED_EVENT} with malformed creator {raw_creator!r}")
                continue

            try:
                tx_hash = await self._route_and_enqueue(creator)
            except Exception as e:
                await self._fail(creator, FailureStage.ROUTE_FUNDS, e, target=self.dealer_address)
                continue
            logger.info(f"Router transfer submitted for {creator} | tx={tx_hash}")

    # ==================== FUNDS ARRIVED ====================

    async def handle_funds_arrived(self, logs: List[Any]):
        for log in logs:
            await self._settle_next(log)

    async def _settle_next(self, log: Any):
        creator = await self._call(self.correlation_queue.dequeue)
        if creator is None:
            tx = _log_tx(log)
            logger.warning(f"{FUNDS_ARRIVED_EVENT} with no creator awaiting settlement | tx={tx}")
            await self._fail(None, FailureStage.UNMATCHED_FUNDS, "no creator awaiting settlement", target=tx)
            return

        self.states[creator] = SettlementState.SETTLEMENT_IN_PROGRESS
        logger.info(f"Settling {creator} | amount={_log_arg(log, '_amount')}")

        try:
            pending = await self._call(self.ledger.pending_transfers_for_creator, creator)
        except Exception as e:
            await self._fail(creator, FailureStage.TRANSFER, e)
            pending = None

        items = pending.items if pending is not None else []
        sent = 0
        for item in items:
            try:
                amount_wei = parse_ether(item.amount)
                await self._call(self.chain_client.send_value, item.recipient, amount_wei)
                sent += 1
            except Exception as e:
                await self._fail(creator, FailureStage.TRANSFER, e, target=item.recipient)

        try:
            await self._call(
                self.chain_client.call_contract,
                self.dealer_address,
                DEALER_ABI,
                POST_OPS_FUNCTION,
                Web3.to_checksum_address(creator),
            )
        except Exception as e:
            await self._fail(creator, FailureStage.POST_OPS, e, target=self.dealer_address)

        if pending is not None:
            try:
                user = await self._call(self.ledger.find_user, creator)
                if user is not None:
                    # only the batches read above; newer ones wait for the next settlement
                    await self._call(
                        self.ledger.mark_completed, user.user_id, pending.settlement_ids
                    )
            except Exception as e:
                await self._fail(creator, FailureStage.COMPLETE, e)

        self._complete(creator)
        logger.info(f"Settlement finished for {creator} | transfers={sent}/{len(items)}")

    # ==================== MANUAL TRIGGER ====================

    async def trigger_transfer(self, creator: str) -> str:
        """
        Resubmit the router transfer for a creator on demand

        Errors are raised to the caller. On success the creator is queued as
        awaiting funds, so the next FundsTransferredToMediator settles it.
        """
        job_creator = normalize_address(creator)
        if self.chain_client is None or not self.dealer_address:
            raise ConfigurationError("Missing RPC, private key or dealer contract address")

        tx_hash = await self._route_and_enqueue(job_creator)
        logger.info(f"Manual router transfer for {job_creator} | tx={tx_hash}")
        return tx_hash
