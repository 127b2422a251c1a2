import logging
import os
from typing import Dict, Mapping, Optional

from dotenv import load_dotenv
from pydantic.dataclasses import dataclass

from whisperpay.src.correlation_queue import DequeuePolicy
from whisperpay.src.errors import ConfigurationError, UnsupportedChainError
from whisperpay.src.models import ParentChain

LOG_FORMAT = (
    "%(asctime)s %(levelname)s " "[%(filename)s:%(lineno)d %(funcName)s] " "%(message)s"
)

# Parent chains a per-user rollup may settle to, keyed by the numeric id the
# RPC reports. SUPPORTED_PARENT_CHAIN_IDS narrows this set per deployment.
PARENT_CHAINS: Dict[int, ParentChain] = {
    1: ParentChain(chain_id=1, name="mainnet"),
    11155111: ParentChain(chain_id=11155111, name="sepolia"),
    42161: ParentChain(chain_id=42161, name="arbitrum"),
    421614: ParentChain(chain_id=421614, name="arbitrum-sepolia"),
}


def configure_logging(level: Optional[str] = None):
    root = logging.getLogger()
    if root.handlers:
        root.handlers.clear()

    logging.basicConfig(
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@dataclass
class Settings:
    parent_chain_rpc: Optional[str] = None
    deployer_private_key: Optional[str] = None
    dealer_contract_address: Optional[str] = None
    supported_chains: Optional[Dict[int, ParentChain]] = None
    correlation_order: DequeuePolicy = DequeuePolicy.FIFO
    event_poll_interval: float = 4.0
    ledger_path: Optional[str] = None
    use_mock_orbit: bool = False
    rollup_provisioner_url: Optional[str] = None
    port: int = 8001

    def __post_init__(self):
        if self.supported_chains is None:
            self.supported_chains = dict(PARENT_CHAINS)

    def lookup_parent_chain(self, chain_id: int) -> ParentChain:
        chain = self.supported_chains.get(int(chain_id))
        if chain is None:
            raise UnsupportedChainError(chain_id)
        return chain


def _parse_supported_chains(raw: Optional[str]) -> Dict[int, ParentChain]:
    if not raw or not raw.strip():
        return dict(PARENT_CHAINS)
    chains = {}
    for part in raw.split(","):
        part = part.strip()
        if not part:
            continue
        try:
            chain_id = int(part)
        except ValueError:
            raise ConfigurationError(f"Invalid chain id in SUPPORTED_PARENT_CHAIN_IDS: {part}")
        if chain_id not in PARENT_CHAINS:
            raise ConfigurationError(f"No parent chain parameters for chain id {chain_id}")
        chains[chain_id] = PARENT_CHAINS[chain_id]
    return chains


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Build settings from the environment (and .env when reading os.environ)."""
    if env is None:
        load_dotenv()
        env = os.environ

    order = (env.get("CORRELATION_ORDER") or "fifo").strip().lower()
    try:
        policy = DequeuePolicy(order)
    except ValueError:
        raise ConfigurationError(f"CORRELATION_ORDER must be fifo or lifo, got {order!r}")

    try:
        poll_interval = float(env.get("EVENT_POLL_INTERVAL") or 4)
        port = int(env.get("PORT") or 8001)
    except ValueError as e:
        raise ConfigurationError(str(e))

    return Settings(
        parent_chain_rpc=env.get("PARENT_CHAIN_RPC") or None,
        deployer_private_key=env.get("DEPLOYER_PRIVATE_KEY") or None,
        dealer_contract_address=env.get("DEALER_CONTRACT_ADDRESS") or None,
        supported_chains=_parse_supported_chains(env.get("SUPPORTED_PARENT_CHAIN_IDS")),
        correlation_order=policy,
        event_poll_interval=poll_interval,
        ledger_path=env.get("LEDGER_PATH") or None,
        use_mock_orbit=(env.get("USE_MOCK_ORBIT") or "false").lower() in ("1", "true", "yes"),
        rollup_provisioner_url=env.get("ROLLUP_PROVISIONER_URL") or None,
        port=port,
    )
