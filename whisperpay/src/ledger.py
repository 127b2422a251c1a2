"""
Ledger

Repository for users, deployments, pending settlements and the records the
settlement orchestrator needs to survive a restart. The core only talks to
the abstract Ledger; LocalLedger keeps everything in memory and optionally
mirrors it to a JSON file after every mutation.
"""

import base64
import logging
import os
import threading
import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from pydantic import Field, TypeAdapter
from pydantic.dataclasses import dataclass

from whisperpay.src.chain_identity import normalize_address
from whisperpay.src.models import (
    CorrelationEntry,
    Deployment,
    FailureRecord,
    PaymentItem,
    PendingSettlement,
    SealedPayload,
    SettlementStatus,
    UserIdentity,
)

logger = logging.getLogger(__name__)


class Ledger(ABC):
    # ==================== USERS ====================

    @abstractmethod
    def find_user(self, address: str) -> Optional[UserIdentity]: ...

    @abstractmethod
    def upsert_user(self, address: str) -> UserIdentity: ...

    # ==================== DEPLOYMENTS ====================

    @abstractmethod
    def append_deployment(
        self,
        owner: str,
        chain_id: int,
        tx_hash: str,
        core_contracts: Dict[str, str],
        created_at: datetime,
    ) -> Deployment: ...

    @abstractmethod
    def latest_deployment(self) -> Optional[Deployment]: ...

    @abstractmethod
    def latest_deployment_for_user(self, user_id: str) -> Optional[Deployment]: ...

    # ==================== SETTLEMENTS ====================

    @abstractmethod
    def create_pending_settlement(
        self, user_id: str, items: List[PaymentItem]
    ) -> PendingSettlement: ...

    @abstractmethod
    def pending_transfers_for_creator(self, address: str) -> Optional[PendingSettlement]: ...

    @abstractmethod
    def mark_completed(
        self, user_id: str, settlement_ids: Optional[List[str]] = None
    ) -> int: ...

    # ==================== SECRETS ====================

    @abstractmethod
    def get_or_create_secret(self, user_id: str, factory: Callable[[], bytes]) -> bytes: ...

    @abstractmethod
    def save_sealed_payload(self, user_id: str, sealed: SealedPayload): ...

    # ==================== ORCHESTRATOR STATE ====================

    @abstractmethod
    def add_awaiting_funds(self, entry: CorrelationEntry): ...

    @abstractmethod
    def remove_awaiting_funds(self, entry_id: str) -> bool: ...

    @abstractmethod
    def awaiting_funds(self) -> List[CorrelationEntry]: ...

    @abstractmethod
    def record_failure(self, record: FailureRecord): ...

    @abstractmethod
    def failures(self) -> List[FailureRecord]: ...


@dataclass
class StoredSecret:
    user_id: str
    key: str  # base64


@dataclass
class StoredSealedPayload:
    user_id: str
    sealed: SealedPayload


@dataclass
class LedgerSnapshot:
    users: List[UserIdentity] = Field(default_factory=list)
    deployments: List[Deployment] = Field(default_factory=list)
    settlements: List[PendingSettlement] = Field(default_factory=list)
    secrets: List[StoredSecret] = Field(default_factory=list)
    sealed_payloads: List[StoredSealedPayload] = Field(default_factory=list)
    awaiting_funds: List[CorrelationEntry] = Field(default_factory=list)
    failures: List[FailureRecord] = Field(default_factory=list)


_SNAPSHOT = TypeAdapter(LedgerSnapshot)


class LocalLedger(Ledger):
    """Thread-safe in-process ledger, persisted to `path` when one is given."""

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._lock = threading.RLock()
        self._state = LedgerSnapshot()
        if path and os.path.exists(path):
            with open(path, "r", encoding="utf-8") as f:
                self._state = _SNAPSHOT.validate_json(f.read())
            logger.info(
                f"Ledger loaded from {path} | users={len(self._state.users)} "
                f"deployments={len(self._state.deployments)} "
                f"awaiting_funds={len(self._state.awaiting_funds)}"
            )

    def _flush(self):
        if not self.path:
            return
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(_SNAPSHOT.dump_json(self._state, indent=2))
        os.replace(tmp_path, self.path)

    # ==================== USERS ====================

    def find_user(self, address: str) -> Optional[UserIdentity]:
        wallet = normalize_address(address)
        with self._lock:
            for user in self._state.users:
                if user.address == wallet:
                    return user
        return None

    def upsert_user(self, address: str) -> UserIdentity:
        wallet = normalize_address(address)
        with self._lock:
            user = self.find_user(wallet)
            if user is None:
                user = UserIdentity(user_id=uuid.uuid4().hex, address=wallet)
                self._state.users.append(user)
                self._flush()
            return user

    # ==================== DEPLOYMENTS ====================

    def append_deployment(self, owner, chain_id, tx_hash, core_contracts, created_at):
        with self._lock:
            user = self.upsert_user(owner)
            deployment = Deployment(
                user_id=user.user_id,
                owner=user.address,
                chain_id=chain_id,
                tx_hash=tx_hash,
                core_contracts=dict(core_contracts),
                created_at=created_at,
            )
            self._state.deployments.append(deployment)
            self._flush()
            return deployment

    @staticmethod
    def _latest(deployments: List[Deployment]) -> Optional[Deployment]:
        latest = None
        for deployment in deployments:
            # later appends win ties
            if latest is None or deployment.created_at >= latest.created_at:
                latest = deployment
        return latest

    def latest_deployment(self) -> Optional[Deployment]:
        with self._lock:
            return self._latest(self._state.deployments)

    def latest_deployment_for_user(self, user_id: str) -> Optional[Deployment]:
        with self._lock:
            return self._latest(
                [d for d in self._state.deployments if d.user_id == user_id]
            )

    # ==================== SETTLEMENTS ====================

    def create_pending_settlement(self, user_id, items):
        with self._lock:
            user = next((u for u in self._state.users if u.user_id == user_id), None)
            if user is None:
                raise KeyError(f"unknown user {user_id}")
            settlement = PendingSettlement(
                settlement_id=uuid.uuid4().hex,
                user_id=user_id,
                owner=user.address,
                items=[PaymentItem(recipient=i.recipient, amount=i.amount) for i in items],
            )
            self._state.settlements.append(settlement)
            self._flush()
            return settlement

    def pending_transfers_for_creator(self, address: str) -> Optional[PendingSettlement]:
        """
        All pending items of the creator's user, oldest batch first, as one
        PendingSettlement. None when the user is unknown or nothing is pending.
        """
        with self._lock:
            user = self.find_user(address)
            if user is None:
                return None
            pending = [
                s
                for s in self._state.settlements
                if s.user_id == user.user_id and s.status == SettlementStatus.PENDING
            ]
            if not pending:
                return None
            return PendingSettlement(
                settlement_id=pending[0].settlement_id,
                user_id=user.user_id,
                owner=user.address,
                items=[item for s in pending for item in s.items],
                status=SettlementStatus.PENDING,
                created_at=pending[0].created_at,
                settlement_ids=[s.settlement_id for s in pending],
            )

    def mark_completed(
        self, user_id: str, settlement_ids: Optional[List[str]] = None
    ) -> int:
        """
        Complete pending settlements of a user. Returns how many changed.

        With `settlement_ids`, only those batches are completed; batches
        created after they were read stay pending.
        """
        wanted = None if settlement_ids is None else set(settlement_ids)
        with self._lock:
            changed = 0
            for idx, settlement in enumerate(self._state.settlements):
                if settlement.user_id != user_id or settlement.status != SettlementStatus.PENDING:
                    continue
                if wanted is None or settlement.settlement_id in wanted:
                    self._state.settlements[idx] = replace(
                        settlement, status=SettlementStatus.COMPLETED
                    )
                    changed += 1
            if changed:
                self._flush()
            return changed

    def settlements_for_user(self, user_id: str) -> List[PendingSettlement]:
        with self._lock:
            return [s for s in self._state.settlements if s.user_id == user_id]

    # ==================== SECRETS ====================

    def get_or_create_secret(self, user_id, factory):
        with self._lock:
            for secret in self._state.secrets:
                if secret.user_id == user_id:
                    return base64.b64decode(secret.key)
            key = factory()
            self._state.secrets.append(
                StoredSecret(user_id=user_id, key=base64.b64encode(key).decode("ascii"))
            )
            self._flush()
            return key

    def save_sealed_payload(self, user_id, sealed):
        with self._lock:
            self._state.sealed_payloads.append(
                StoredSealedPayload(user_id=user_id, sealed=sealed)
            )
            self._flush()

    def sealed_payloads_for_user(self, user_id: str) -> List[SealedPayload]:
        with self._lock:
            return [p.sealed for p in self._state.sealed_payloads if p.user_id == user_id]

    # ==================== ORCHESTRATOR STATE ====================

    def add_awaiting_funds(self, entry):
        with self._lock:
            self._state.awaiting_funds.append(entry)
            self._flush()

    def remove_awaiting_funds(self, entry_id):
        with self._lock:
            for idx, entry in enumerate(self._state.awaiting_funds):
                if entry.entry_id == entry_id:
                    del self._state.awaiting_funds[idx]
                    self._flush()
                    return True
            return False

    def awaiting_funds(self):
        with self._lock:
            return list(self._state.awaiting_funds)

    def record_failure(self, record):
        with self._lock:
            self._state.failures.append(record)
            self._flush()

    def failures(self):
        with self._lock:
            return list(self._state.failures)
