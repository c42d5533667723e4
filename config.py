"""
Router Configuration
====================
Centralized configuration for the inference routing layer.

[CONFIG] Values are read from the environment (``.env`` is loaded by
``main.py``). Nothing here is a process-wide singleton: ``load_config()``
returns a fresh ``Config`` which the caller passes into ``build_context()``.
"""

import json
import os
import re
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from core.errors import ConfigurationError

# ============================================================================
# Blockchain Network Presets
# ============================================================================

NETWORKS: Dict[str, Dict[str, object]] = {
    "mainnet": {
        "name": "0G Mainnet",
        "chain_id": 16661,
        "rpc_url": "https://evmrpc.0g.ai",
        "explorer_url": "https://chainscan.0g.ai",
        "symbol": "OG",
        # NOTE: Zero addresses are placeholders until the compute contracts are
        # published; validate() rejects them, set ZG_*_CONTRACT instead
        "ledger_contract": "0x0000000000000000000000000000000000000000",
        "serving_contract": "0x0000000000000000000000000000000000000000",
    },
    "testnet": {
        "name": "0G Galileo Testnet",
        "chain_id": 16601,
        "rpc_url": "https://evmrpc-testnet.0g.ai",
        "explorer_url": "https://chainscan-galileo.0g.ai",
        "symbol": "OG",
        "ledger_contract": "0x0000000000000000000000000000000000000000",
        "serving_contract": "0x0000000000000000000000000000000000000000",
    },
}

DEFAULT_NETWORK = "testnet"

# Smallest-unit multiplier (balances are kept as integers, like wei)
UNIT = 10**18

# Sentinels used for degraded responses, never valid addresses
SIMULATION_PROVIDER = "simulation-mode"
SIMULATION_MODEL = "local-fallback"

EXHAUSTED_MODES = ("error", "simulation")

ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")
ZERO_ADDRESS = "0x" + "0" * 40

# Chat-capable models (services with other models are skipped by discovery)
DEFAULT_MODEL_PATTERN = r"llama|deepseek|qwen|mixtral|claude|gpt|chat"


def to_units(amount: object) -> int:
    """Convert a decimal token amount ("0.1", 0.1, Decimal) to smallest units."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation:
        raise ConfigurationError(f"Invalid token amount: {amount!r}")
    if value < 0:
        raise ConfigurationError(f"Token amount must be >= 0: {amount!r}")
    return int(value * UNIT)


def from_units(units: int) -> Decimal:
    """Convert smallest units back to a decimal token amount."""
    return Decimal(units) / Decimal(UNIT)


@dataclass(frozen=True)
class KnownProvider:
    """
    Entry of the static known-good provider table.

    ``rank`` orders known providers (lower first). ``endpoint`` and ``model``
    are only needed when the entry must stand in for a discovered service
    because discovery failed.
    """

    address: str
    rank: int
    endpoint: str = ""
    model: str = ""
    verifiability: str = "none"
    signer_address: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, object]) -> "KnownProvider":
        return cls(
            address=str(data["address"]),
            rank=int(data["rank"]),  # type: ignore[arg-type]
            endpoint=str(data.get("endpoint", "")),
            model=str(data.get("model", "")),
            verifiability=str(data.get("verifiability", "none")),
            signer_address=str(data.get("signer_address", "")),
        )


# Providers that served reliably in production. The order was not consistent
# across earlier deployments; the reasoning model goes first.
DEFAULT_KNOWN_PROVIDERS: List[KnownProvider] = [
    KnownProvider(
        address="0x3feE5a4dd5FDb8a32dDA97Bed899830605dBD9D3",
        rank=0,
        endpoint="https://api.0g.network/inference",
        model="phala/deepseek-chat-v3-0324",
        verifiability="attested",
    ),
    KnownProvider(
        address="0xf07240Efa67755B5311bc75784a061eDB47165Dd",
        rank=1,
        endpoint="https://api2.0g.network/inference",
        model="phala/llama-3.3-70b-instruct",
        verifiability="attested",
    ),
]


@dataclass
class ChainConfig:
    """Blockchain network parameters (populated from a NETWORKS preset)."""

    network: str = DEFAULT_NETWORK
    name: str = str(NETWORKS[DEFAULT_NETWORK]["name"])
    chain_id: int = int(NETWORKS[DEFAULT_NETWORK]["chain_id"])  # type: ignore[call-overload]
    rpc_url: str = str(NETWORKS[DEFAULT_NETWORK]["rpc_url"])
    explorer_url: str = str(NETWORKS[DEFAULT_NETWORK]["explorer_url"])
    token_symbol: str = "OG"
    ledger_contract: str = str(NETWORKS[DEFAULT_NETWORK]["ledger_contract"])
    serving_contract: str = str(NETWORKS[DEFAULT_NETWORK]["serving_contract"])

    # RPC call timeout (seconds)
    rpc_timeout: float = 15.0

    # Receipt wait for top-up / acknowledge transactions (seconds)
    tx_timeout: float = 60.0

    def explorer_tx_url(self, tx_hash: str) -> str:
        """Block explorer link for a transaction, or "" without an explorer."""
        if not self.explorer_url or not tx_hash:
            return ""
        return f"{self.explorer_url.rstrip('/')}/tx/{tx_hash}"


@dataclass
class WalletConfig:
    """Signing credential."""

    private_key: str = ""


@dataclass
class LedgerConfig:
    """Prepaid compute balance settings (amounts in smallest units)."""

    min_balance: int = to_units("0.01")
    topup_amount: int = to_units("0.1")

    # Serialize ensure_funds() so concurrent requests cannot double top-up
    serialize_funding: bool = True


@dataclass
class RoutingConfig:
    """Failover loop settings."""

    # Per-attempt timeout for the provider HTTP call (seconds)
    attempt_timeout: float = 20.0

    # Discovery call timeout (seconds) and retry policy
    discovery_timeout: float = 10.0
    discovery_attempts: int = 2
    discovery_retry_delay: float = 2.0

    # 0 disables the cache; only non-empty discovery results are cached
    discovery_cache_ttl: float = 0.0

    # Timeout for the optional attestation check (seconds)
    verify_timeout: float = 10.0

    # "error" -> ok=False, "simulation" -> labeled degraded answer
    exhausted_mode: str = "error"

    # When True a failed acknowledgement blocks header issuance
    require_acknowledgement: bool = False

    # Upper bound on attempts per request (0 = every candidate)
    max_attempts: int = 0

    preferred_provider: Optional[str] = None
    model_pattern: str = DEFAULT_MODEL_PATTERN

    known_providers: List[KnownProvider] = field(
        default_factory=lambda: list(DEFAULT_KNOWN_PROVIDERS)
    )

    @property
    def rank_table(self) -> Dict[str, int]:
        """address (lower-case) -> rank."""
        return {p.address.lower(): p.rank for p in self.known_providers}


@dataclass
class StorageConfig:
    """Local aiosqlite state (balance snapshot, attempt journal)."""

    # Empty string disables persistence
    state_db_path: str = "zeroute.db"

    # Attempt journal retention (newest rows kept, 0 = unbounded)
    max_attempts: int = 10000


@dataclass
class Config:
    """Top-level configuration."""

    chain: ChainConfig = field(default_factory=ChainConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    routing: RoutingConfig = field(default_factory=RoutingConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    def validate(self) -> "Config":
        """
        Check the configuration before any routing happens.

        Raises:
            ConfigurationError: missing credential, RPC endpoint or
                malformed values, or a network without compute contracts
        """
        if not self.wallet.private_key:
            raise ConfigurationError("Missing ZG_PRIVATE_KEY (signing credential)")
        if not self.chain.rpc_url:
            raise ConfigurationError("Missing ZG_RPC_URL (RPC endpoint)")
        if self.routing.exhausted_mode not in EXHAUSTED_MODES:
            raise ConfigurationError(
                f"ZG_EXHAUSTED_MODE must be one of {EXHAUSTED_MODES}, "
                f"got {self.routing.exhausted_mode!r}"
            )
        if self.routing.attempt_timeout <= 0 or self.routing.discovery_timeout <= 0:
            raise ConfigurationError("Timeouts must be > 0")
        if self.routing.discovery_attempts < 1:
            raise ConfigurationError("ZG_DISCOVERY_ATTEMPTS must be >= 1")
        contracts = (
            ("ZG_LEDGER_CONTRACT", self.chain.ledger_contract),
            ("ZG_SERVING_CONTRACT", self.chain.serving_contract),
        )
        for key, address in contracts:
            if not ADDRESS_RE.match(address):
                raise ConfigurationError(f"Malformed {key}: {address!r}")
            if address == ZERO_ADDRESS:
                raise ConfigurationError(
                    f"Missing {key}: no compute contract is published for "
                    f"{self.chain.network!r}, set it explicitly"
                )
        if self.storage.max_attempts < 0:
            raise ConfigurationError("ZG_STATE_MAX_ATTEMPTS must be >= 0")
        preferred = self.routing.preferred_provider
        if preferred and not ADDRESS_RE.match(preferred):
            raise ConfigurationError(f"Malformed ZG_PROVIDER_ADDRESS: {preferred!r}")
        for known in self.routing.known_providers:
            if not ADDRESS_RE.match(known.address):
                raise ConfigurationError(f"Malformed known provider address: {known.address!r}")
        return self


def _env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


def _env_int(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def load_known_providers(path: str) -> List[KnownProvider]:
    """
    Load the known-good provider table from JSON.

    Accepted shapes: a list of entries, or ``{"providers": [...]}``.
    """
    file_path = Path(path)
    if not file_path.exists():
        raise ConfigurationError(f"Known providers file not found: {path}")
    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Invalid JSON in {path}: {e}")

    entries = raw.get("providers") if isinstance(raw, dict) else raw
    if not isinstance(entries, list) or not entries:
        raise ConfigurationError(f"{path} must contain a non-empty provider list")

    try:
        return [KnownProvider.from_dict(entry) for entry in entries]
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid provider entry in {path}: {e}")


def load_config(env: Optional[Mapping[str, str]] = None) -> Config:
    """
    Build a Config from environment variables.

    Args:
        env: Mapping to read from (defaults to ``os.environ``)

    Returns:
        Unvalidated Config; call ``validate()`` before routing.
    """
    env = os.environ if env is None else env

    network = env.get("ZG_NETWORK", DEFAULT_NETWORK).strip().lower() or DEFAULT_NETWORK
    if network not in NETWORKS:
        raise ConfigurationError(f"Unknown ZG_NETWORK {network!r}, expected one of {sorted(NETWORKS)}")
    preset = NETWORKS[network]

    chain = ChainConfig(
        network=network,
        name=str(preset["name"]),
        chain_id=int(preset["chain_id"]),  # type: ignore[call-overload]
        rpc_url=env.get("ZG_RPC_URL", "").strip() or str(preset["rpc_url"]),
        explorer_url=str(preset["explorer_url"]),
        token_symbol=str(preset["symbol"]),
        ledger_contract=env.get("ZG_LEDGER_CONTRACT", "").strip() or str(preset["ledger_contract"]),
        serving_contract=env.get("ZG_SERVING_CONTRACT", "").strip() or str(preset["serving_contract"]),
        rpc_timeout=_env_float(env, "ZG_RPC_TIMEOUT", ChainConfig.rpc_timeout),
        tx_timeout=_env_float(env, "ZG_TX_TIMEOUT", ChainConfig.tx_timeout),
    )

    ledger = LedgerConfig(
        min_balance=to_units(env.get("ZG_MIN_BALANCE", "").strip() or "0.01"),
        topup_amount=to_units(env.get("ZG_TOPUP_AMOUNT", "").strip() or "0.1"),
        serialize_funding=_env_bool(env.get("ZG_SERIALIZE_FUNDING"), True),
    )

    known_file = env.get("KNOWN_PROVIDERS_FILE", "").strip()
    known = load_known_providers(known_file) if known_file else list(DEFAULT_KNOWN_PROVIDERS)

    routing = RoutingConfig(
        attempt_timeout=_env_float(env, "ZG_ATTEMPT_TIMEOUT", RoutingConfig.attempt_timeout),
        discovery_timeout=_env_float(env, "ZG_DISCOVERY_TIMEOUT", RoutingConfig.discovery_timeout),
        discovery_attempts=_env_int(env, "ZG_DISCOVERY_ATTEMPTS", RoutingConfig.discovery_attempts),
        discovery_retry_delay=_env_float(env, "ZG_DISCOVERY_RETRY_DELAY", RoutingConfig.discovery_retry_delay),
        discovery_cache_ttl=_env_float(env, "ZG_DISCOVERY_CACHE_TTL", RoutingConfig.discovery_cache_ttl),
        verify_timeout=_env_float(env, "ZG_VERIFY_TIMEOUT", RoutingConfig.verify_timeout),
        exhausted_mode=env.get("ZG_EXHAUSTED_MODE", "").strip().lower() or RoutingConfig.exhausted_mode,
        require_acknowledgement=_env_bool(env.get("ZG_REQUIRE_ACK"), False),
        max_attempts=_env_int(env, "ZG_MAX_ATTEMPTS", RoutingConfig.max_attempts),
        preferred_provider=env.get("ZG_PROVIDER_ADDRESS", "").strip() or None,
        model_pattern=env.get("ZG_MODEL_PATTERN", "").strip() or DEFAULT_MODEL_PATTERN,
        known_providers=known,
    )

    return Config(
        chain=chain,
        wallet=WalletConfig(private_key=env.get("ZG_PRIVATE_KEY", "").strip()),
        ledger=ledger,
        routing=routing,
        storage=StorageConfig(
            state_db_path=env.get("ZG_STATE_DB", "zeroute.db").strip(),
            max_attempts=_env_int(env, "ZG_STATE_MAX_ATTEMPTS", StorageConfig.max_attempts),
        ),
    )


def get_network_info(config: Config) -> Dict[str, object]:
    """Return the active network preset merged with overrides."""
    return {
        "key": config.chain.network,
        "name": config.chain.name,
        "chain_id": config.chain.chain_id,
        "rpc_url": config.chain.rpc_url,
        "explorer_url": config.chain.explorer_url,
        "symbol": config.chain.token_symbol,
        "ledger_contract": config.chain.ledger_contract,
        "serving_contract": config.chain.serving_contract,
    }
