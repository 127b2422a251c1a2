"""
Deployment Service

Provisions one rollup per user, reports deployment status, and seals payment
batches that the settlement orchestrator later pays out.
"""

import logging
from typing import Dict, List, Optional

from whisperpay.src.chain_identity import derive_chain_id, normalize_address
from whisperpay.src.errors import ConfigurationError, ProvisioningError, ValidationError
from whisperpay.src.ledger import Ledger
from whisperpay.src.models import PaymentItem, utcnow
from whisperpay.src.payload_sealer import PayloadSealer
from whisperpay.src.rollup_provisioner import RollupProvisioner
from whisperpay.src.units import parse_ether

logger = logging.getLogger(__name__)


class DeploymentService:
    def __init__(
        self,
        provisioner: Optional[RollupProvisioner],
        ledger: Ledger,
        sealer: Optional[PayloadSealer] = None,
    ):
        self.provisioner = provisioner
        self.ledger = ledger
        self.sealer = sealer or PayloadSealer()

    def deploy_for_user(self, user_wallet: str) -> Dict:
        wallet = normalize_address(user_wallet)
        chain_id = derive_chain_id(wallet)
        if self.provisioner is None:
            raise ConfigurationError("Missing required config for rollup deployment")

        logger.info(f"Provisioning rollup | owner={wallet} chain_id={chain_id}")
        try:
            result = self.provisioner.provision(wallet, chain_id)
        except ProvisioningError:
            raise
        except Exception as e:
            logger.error(f"Rollup provisioning failed for {wallet}: {e}")
            raise ProvisioningError(str(e) or "Deployment failed") from e

        self.ledger.append_deployment(
            owner=wallet,
            chain_id=chain_id,
            tx_hash=result.tx_hash,
            core_contracts=result.core_contracts,
            created_at=utcnow(),
        )

        return {
            "l3ChainId": str(chain_id),
            "coreContracts": result.core_contracts,
            "txHash": result.tx_hash,
        }

    def get_status(self, user_wallet: str) -> Dict:
        wallet = normalize_address(user_wallet)
        user = self.ledger.find_user(wallet)

        if user is None:
            return {
                "message": "User not found",
                "l3Exists": False,
                "additionalInfo": {"chainId": ""},
            }

        deployment = self.ledger.latest_deployment_for_user(user.user_id)
        if deployment is None:
            return {
                "message": "No deployment found for this user",
                "l3Exists": False,
                "additionalInfo": {"chainId": ""},
            }

        return {
            "message": "Deployment found",
            "l3Exists": True,
            "additionalInfo": {"chainId": str(deployment.chain_id)},
        }

    @staticmethod
    def _parse_items(items) -> List[PaymentItem]:
        if not items or not isinstance(items, list):
            raise ValidationError("items are required")

        parsed = []
        for idx, item in enumerate(items):
            if not isinstance(item, dict):
                raise ValidationError(f"items[{idx}] must be an object")
            recipient = normalize_address(item.get("recipient") or "")
            amount = str(item.get("amount") or "").strip()
            parse_ether(amount, field=f"items[{idx}].amount")
            parsed.append(PaymentItem(recipient=recipient, amount=amount))
        return parsed

    def encrypt_for_user(self, user_wallet: str, items) -> Dict:
        """
        Seal a payment batch for a user and queue it for settlement

        Args:
            user_wallet: Address of the job creator paying out
            items: List of {"recipient": address, "amount": decimal ETH string}

        Returns:
            Dictionary with the user's rollup chain id and the sealed message
            as "iv:tag:ciphertext" (base64 parts)
        """
        wallet = normalize_address(user_wallet)
        payment_items = self._parse_items(items)

        user = self.ledger.upsert_user(wallet)
        key = self.ledger.get_or_create_secret(user.user_id, self.sealer.generate_key)

        sealed = self.sealer.seal_payload(
            key,
            [{"recipient": i.recipient, "amount": i.amount} for i in payment_items],
        )
        self.ledger.save_sealed_payload(user.user_id, sealed)
        settlement = self.ledger.create_pending_settlement(user.user_id, payment_items)
        logger.info(
            f"Queued settlement {settlement.settlement_id} | owner={wallet} items={len(payment_items)}"
        )

        return {
            "message": "Encrypted successfully",
            "l3ChainId": str(derive_chain_id(wallet)),
            "encryptedMessage": sealed.as_message(),
        }
