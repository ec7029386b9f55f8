import os
import logging
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LAMPORTS_PER_SOL = 1_000_000_000

# OpenBook v2 program - the program this orchestrator's catalog describes
DEFAULT_PROGRAM_ID = 'opnb2LAfJYbRMAHHvqjCwQxanZn7ReEHp1k81EohpZb'
DEFAULT_CATALOG_SOURCE = 'http://localhost:3000/idl.json'

NETWORK_URLS = {
    'mainnet-beta': 'https://api.mainnet-beta.solana.com',
    'testnet': 'https://api.testnet.solana.com',
    'devnet': 'https://api.devnet.solana.com',
}


def configure_logging(level=None):
    """Set up root logging the same way for scripts and tests."""
    level = level or os.getenv('LOG_LEVEL', 'INFO')
    logging.basicConfig(level=getattr(logging, str(level).upper(), logging.INFO), format=LOG_FORMAT)


def _env_int(name, default):
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name} format, using default value of {default}")
        return default


def _env_float(name, default):
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        logger.warning(f"Invalid {name} format, using default value of {default}")
        return default


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def rpc_url_for(network):
    """Public RPC endpoint for a cluster name; unknown names fall back to devnet."""
    if network not in NETWORK_URLS:
        logger.warning(f"Unknown SOLANA_NETWORK {network}, using devnet")
    return NETWORK_URLS.get(network, NETWORK_URLS['devnet'])


@dataclass
class OrchestratorConfig:
    network: str = 'devnet'
    rpc_url: str = NETWORK_URLS['devnet']
    program_id: str = DEFAULT_PROGRAM_ID
    catalog_source: str = DEFAULT_CATALOG_SOURCE
    private_key: Optional[str] = None
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    confirm_timeout: float = 60.0
    poll_interval: float = 2.0
    rpc_timeout: float = 30.0
    min_payer_balance: int = LAMPORTS_PER_SOL
    auto_airdrop: bool = True
    airdrop_lamports: int = LAMPORTS_PER_SOL
    skip_preflight: bool = False

    @property
    def funding_allowed(self):
        # Faucets only exist off mainnet
        return self.auto_airdrop and self.network != 'mainnet-beta'

    @classmethod
    def from_env(cls):
        network = os.getenv('SOLANA_NETWORK', 'devnet')
        config = cls(
            network=network,
            rpc_url=os.getenv('SOLANA_RPC_URL') or rpc_url_for(network),
            program_id=os.getenv('PROGRAM_ID', DEFAULT_PROGRAM_ID),
            catalog_source=os.getenv('INSTRUCTION_CATALOG', DEFAULT_CATALOG_SOURCE),
            private_key=os.getenv('PRIVATE_KEY') or None,
            max_attempts=max(1, _env_int('MAX_SUBMIT_ATTEMPTS', 3)),
            base_delay=_env_float('RETRY_BASE_DELAY_SECONDS', 1.0),
            max_delay=_env_float('RETRY_MAX_DELAY_SECONDS', 30.0),
            confirm_timeout=_env_float('CONFIRM_TIMEOUT_SECONDS', 60.0),
            poll_interval=_env_float('CONFIRM_POLL_INTERVAL_SECONDS', 2.0),
            rpc_timeout=_env_float('RPC_TIMEOUT_SECONDS', 30.0),
            min_payer_balance=_env_int('MIN_PAYER_BALANCE_LAMPORTS', LAMPORTS_PER_SOL),
            auto_airdrop=_env_bool('AUTO_AIRDROP', network != 'mainnet-beta'),
            airdrop_lamports=_env_int('AIRDROP_LAMPORTS', LAMPORTS_PER_SOL),
            skip_preflight=_env_bool('SKIP_PREFLIGHT', False),
        )
        if not config.private_key:
            logger.warning("PRIVATE_KEY not set in environment variables, a session payer will be generated")
        logger.info(f"Orchestrator configured for {config.network} ({config.rpc_url})")
        return config
