"""
Chain endpoints and engine tunables.

RPC URLs usually embed a provider API key, so besides the environment they
can be stored in the system keyring under the ``coverify`` service, using the
environment variable name as the username:

    keyring set coverify MAINNET_RPC_URL

License: AGPL-3.0
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Optional

import keyring
from keyring.errors import KeyringError

from .errors import ConfigError

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "coverify"

# chain id -> (name, environment variable holding the RPC URL)
SUPPORTED_CHAINS = {
    1: ("mainnet", "MAINNET_RPC_URL"),
    5: ("goerli", "GOERLI_RPC_URL"),
    10: ("optimism", "OPTIMISM_RPC_URL"),
    100: ("gnosis", "GNOSIS_CHAIN_RPC_URL"),
    137: ("polygon", "POLYGON_RPC_URL"),
    42161: ("arbitrum-one", "ARBITRUM_ONE_RPC_URL"),
    43114: ("avalanche", "AVALANCHE_RPC_URL"),
    11155111: ("sepolia", "SEPOLIA_RPC_URL"),
}


@dataclass(frozen=True)
class ChainEndpoint:
    chain_id: int
    name: str
    rpc_url: str


@dataclass(frozen=True)
class Settings:
    chains: Dict[int, ChainEndpoint] = field(default_factory=dict)
    max_in_flight: int = 4
    rpc_timeout: float = 10.0
    rpc_retries: int = 3
    rpc_backoff: float = 0.5
    chain_timeout: float = 60.0
    deadline: float = 300.0
    build_tool: str = "forge"

    def endpoint(self, chain_id):
        return self.chains.get(chain_id)


def _secret(environ, name):
    value = environ.get(name)
    if value:
        return value
    try:
        return keyring.get_password(KEYRING_SERVICE, name)
    except KeyringError as e:
        logger.debug("Keyring lookup for %s failed: %s", name, e)
        return None


def _number(environ, name, default, cast, allow_zero=False):
    raw = environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"{name} out of range: {raw!r}")
    return value


def load_settings(environ=None, chain_ids: Optional[list] = None):
    """Build Settings from the environment, falling back to the keyring for RPC URLs."""
    if environ is None:
        environ = os.environ

    wanted = chain_ids if chain_ids is not None else SUPPORTED_CHAINS.keys()
    chains = {}
    for chain_id in wanted:
        if chain_id not in SUPPORTED_CHAINS:
            raise ConfigError(f"Unsupported chain id {chain_id}")
        name, env_var = SUPPORTED_CHAINS[chain_id]
        url = _secret(environ, env_var)
        if not url:
            logger.info("No RPC URL for %s (%s), skipping chain", name, env_var)
            continue
        chains[chain_id] = ChainEndpoint(chain_id=chain_id, name=name, rpc_url=url)

    build_tool = environ.get("COVERIFY_BUILD_TOOL", "forge")
    if build_tool not in ("forge", "solc"):
        raise ConfigError(f"COVERIFY_BUILD_TOOL must be 'forge' or 'solc', got {build_tool!r}")

    return Settings(
        chains=chains,
        max_in_flight=_number(environ, "COVERIFY_MAX_IN_FLIGHT", 4, int),
        rpc_timeout=_number(environ, "COVERIFY_RPC_TIMEOUT", 10.0, float),
        rpc_retries=_number(environ, "COVERIFY_RPC_RETRIES", 3, int, allow_zero=True),
        rpc_backoff=_number(environ, "COVERIFY_RPC_BACKOFF", 0.5, float),
        chain_timeout=_number(environ, "COVERIFY_CHAIN_TIMEOUT", 60.0, float),
        deadline=_number(environ, "COVERIFY_DEADLINE", 300.0, float),
        build_tool=build_tool,
    )
