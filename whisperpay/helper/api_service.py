import asyncio
import functools
import logging
import sys
import traceback
from typing import Optional

from fastapi import Request

from whisperpay.config import Settings
from whisperpay.helper.api_helper import APIHelper
from whisperpay.src.bridge_service import BridgeService
from whisperpay.src.chain_client import ParentChainClient
from whisperpay.src.correlation_queue import CorrelationQueue
from whisperpay.src.deployment_service import DeploymentService
from whisperpay.src.errors import ConfigurationError, ValidationError, WhisperPayError
from whisperpay.src.ledger import Ledger, LocalLedger
from whisperpay.src.rollup_provisioner import (
    HttpRollupProvisioner,
    MockRollupProvisioner,
    RollupProvisioner,
)
from whisperpay.src.settlement_orchestrator import SettlementOrchestrator

logger = logging.getLogger(__name__)


class APIService:
    def __init__(
        self,
        settings: Settings,
        ledger: Optional[Ledger] = None,
        provisioner: Optional[RollupProvisioner] = None,
        chain_client: Optional[ParentChainClient] = None,
    ):
        self.settings = settings
        self.ledger = ledger or LocalLedger(settings.ledger_path)
        self._chain_client = chain_client
        self.deployment_service = DeploymentService(
            provisioner or self._build_provisioner(), self.ledger
        )
        self.bridge_service = BridgeService(self.get_chain_client, self.ledger)
        self.orchestrator: Optional[SettlementOrchestrator] = None

    def _build_provisioner(self) -> Optional[RollupProvisioner]:
        if self.settings.use_mock_orbit:
            return MockRollupProvisioner()
        if self.settings.rollup_provisioner_url:
            return HttpRollupProvisioner(self.settings.rollup_provisioner_url)
        logger.warning("No rollup provisioner configured; deployments will be rejected")
        return None

    def get_chain_client(self) -> ParentChainClient:
        """Parent chain client, created on first use. Raises ConfigurationError."""
        if self._chain_client is None:
            if not self.settings.parent_chain_rpc or not self.settings.deployer_private_key:
                raise ConfigurationError("Missing RPC or private key")
            self._chain_client = ParentChainClient(
                self.settings.parent_chain_rpc,
                self.settings.deployer_private_key,
                self.settings.lookup_parent_chain,
            )
        return self._chain_client

    # ==================== LIFECYCLE ====================

    async def register_startup_event(self) -> SettlementOrchestrator:
        """Build the settlement orchestrator and start its watchers"""
        try:
            chain_client = self.get_chain_client()
        except ConfigurationError as e:
            logger.warning(f"Settlement watchers disabled: {e}")
            chain_client = None

        dealer_address = self.settings.dealer_contract_address
        try:
            self.orchestrator = SettlementOrchestrator(
                chain_client,
                self.ledger,
                dealer_address,
                correlation_queue=CorrelationQueue(self.settings.correlation_order, self.ledger),
                poll_interval=self.settings.event_poll_interval,
            )
        except ValidationError as e:
            logger.error(f"Invalid DEALER_CONTRACT_ADDRESS {dealer_address!r}: {e}")
            self.orchestrator = SettlementOrchestrator(
                chain_client,
                self.ledger,
                None,
                correlation_queue=CorrelationQueue(self.settings.correlation_order, self.ledger),
            )

        await self.orchestrator.start()
        return self.orchestrator

    async def register_shutdown_event(self):
        if self.orchestrator is not None:
            await self.orchestrator.stop()

    # ==================== HELPERS ====================

    async def _run_blocking(self, fn, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args))

    async def _payload(self, request: Request) -> dict:
        try:
            payload_json = await APIHelper.handlePayloadJson(request)
        except ValueError:
            raise ValidationError("Malformed request body")
        if not isinstance(payload_json, dict):
            raise ValidationError("Request body must be a JSON object")
        return payload_json

    def _failure(self, error: Exception, operation: str):
        if isinstance(error, WhisperPayError):
            logger.warning(f"{operation} rejected: {error}")
        else:
            self.full_system_traceback(error, operation)
        return APIHelper.error_response(error)

    def full_system_traceback(self, error, operation: str):
        exc_type, exc_value, exc_tb = sys.exc_info()
        full_traceback = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
        logger.error(f"Error in {operation}: {error}")
        logger.error(full_traceback)

    # ==================== DEPLOYMENTS ====================

    async def deploy(self, request: Request):
        try:
            payload_json = await self._payload(request)
            user_wallet = payload_json.get("userWallet")
            if not user_wallet:
                raise ValidationError("userWallet is required")
            result = await self._run_blocking(
                self.deployment_service.deploy_for_user, user_wallet
            )
            return APIHelper.success_response(result)
        except Exception as e:
            return self._failure(e, "deploy")

    async def status(self, wallet: Optional[str]):
        try:
            if not wallet:
                raise ValidationError("wallet is required")
            result = await self._run_blocking(self.deployment_service.get_status, wallet)
            return APIHelper.success_response(result)
        except Exception as e:
            return self._failure(e, "status")

    async def encrypt(self, request: Request, wallet: Optional[str]):
        try:
            if not wallet:
                raise ValidationError("wallet is required")
            payload_json = await self._payload(request)
            result = await self._run_blocking(
                self.deployment_service.encrypt_for_user, wallet, payload_json.get("items")
            )
            return APIHelper.success_response(result)
        except Exception as e:
            return self._failure(e, "encrypt")

    # ==================== BRIDGE ====================

    async def bridge(self, request: Request):
        try:
            payload_json = await self._payload(request)
            token = payload_json.get("token")
            amount = payload_json.get("amount")
            to = payload_json.get("to")
            if not token or not amount or not to:
                raise ValidationError("token, amount, to are required")
            result = await self._run_blocking(self.bridge_service.bridge, token, amount, to)
            return APIHelper.success_response(result)
        except Exception as e:
            return self._failure(e, "bridge")

    # ==================== SETTLEMENT ====================

    async def trigger_transfer(self, request: Request):
        try:
            payload_json = await self._payload(request)
            job_creator = payload_json.get("jobCreator")
            if not job_creator:
                raise ValidationError("jobCreator is required")
            if self.orchestrator is None:
                raise ConfigurationError("Settlement orchestrator not initialized")
            tx_hash = await self.orchestrator.trigger_transfer(job_creator)
            return APIHelper.success_response({"status": "submitted", "txHash": tx_hash})
        except Exception as e:
            return self._failure(e, "trigger_transfer")

    async def settlement_health(self):
        if self.orchestrator is None:
            return APIHelper.error_response(
                ConfigurationError("Settlement orchestrator not initialized")
            )
        health = await self._run_blocking(self.orchestrator.health)
        return APIHelper.success_response(
            {
                "message": (
                    "Settlement watchers operational"
                    if health["running"]
                    else "Settlement watchers not running"
                ),
                **health,
            }
        )
