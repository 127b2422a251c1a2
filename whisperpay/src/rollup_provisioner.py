"""
Rollup Provisioner

Creates the rollup chain for one user on the parent chain. The service only
needs the deployment transaction hash and the core contract addresses back.
"""

import logging
from abc import ABC, abstractmethod

import httpx
from web3 import Web3

from whisperpay.src.errors import ConfigurationError, ProvisioningError
from whisperpay.src.models import ProvisionResult

logger = logging.getLogger(__name__)


class RollupProvisioner(ABC):
    @abstractmethod
    def provision(self, owner: str, chain_id: int) -> ProvisionResult:
        """Deploy a rollup with `chain_id` owned by `owner`."""


class MockRollupProvisioner(RollupProvisioner):
    """Deterministic stand-in: same owner and chain id always give the same result."""

    def provision(self, owner: str, chain_id: int) -> ProvisionResult:
        seed = f"{owner.lower()}-{chain_id}"
        digest = Web3.to_hex(Web3.keccak(text=seed))[2:]
        return ProvisionResult(
            tx_hash="0x" + digest,
            core_contracts={
                "rollup": "0x" + digest[0:40],
                "inbox": "0x" + digest[4:44],
                "sequencerInbox": "0x" + digest[8:48],
                "bridge": "0x" + digest[16:56],
            },
        )


class HttpRollupProvisioner(RollupProvisioner):
    """Delegates deployment to an external provisioning endpoint."""

    def __init__(self, url: str, timeout: float = 300.0, client: httpx.Client = None):
        if not url:
            raise ConfigurationError("Missing ROLLUP_PROVISIONER_URL")
        self.url = url
        self.timeout = timeout
        self.client = client

    def provision(self, owner: str, chain_id: int) -> ProvisionResult:
        payload = {"owner": owner, "chainId": chain_id}
        try:
            if self.client is not None:
                response = self.client.post(self.url, json=payload, timeout=self.timeout)
            else:
                with httpx.Client(timeout=self.timeout) as client:
                    response = client.post(self.url, json=payload)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Rollup provisioning request failed: {e}")
            raise ProvisioningError(str(e)) from e

        tx_hash = data.get("txHash") or data.get("transactionHash")
        if not tx_hash:
            raise ProvisioningError("Deployment did not return a transaction hash")

        return ProvisionResult(
            tx_hash=tx_hash,
            core_contracts={
                str(name): str(addr)
                for name, addr in (data.get("coreContracts") or {}).items()
            },
        )
