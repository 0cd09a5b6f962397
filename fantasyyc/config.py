"""
fantasyyc/config.py - Scoring server configuration

Reads settings from a TOML file:
  - macOS/Linux: ~/.fantasyyc/config.toml
  - Windows: %APPDATA%\\fantasyyc\\config.toml
  - FANTASYYC_CONFIG env var overrides the path

Secrets never need to live in the file. Environment variables win over TOML:
ADMIN_PRIVATE_KEY, ADMIN_API_KEY, SCORE_HMAC_SECRET, TWITTER_API_KEY,
OPENROUTER_API_KEY, FANTASYYC_RPC_URL.

Example:
    [chain]
    rpc_url = "https://node.shadownet.etherlink.com"
    tournament_manager = "0xdDAC8b96506E46123878e84d456f8Db1DCFd1092"

    [classifier]
    models = ["google/gemini-2.5-flash", "openai/gpt-4o-mini"]

    [scoring]
    db_path = "~/.fantasyyc/league.db"
    workers = 4

    [scoring.multipliers]
    Legendary = 10

    [[entities]]
    id = 1
    name = "Openclaw"
    handle = "openclaw"
    rarity = "Legendary"
"""

import logging
import os
import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

from .contract import POINTS_SIZE
from .entities import DEFAULT_ENTITIES, EntityTable, Rarity, TrackedEntity

logger = logging.getLogger(__name__)

# ============================================================================
# Constants
# ============================================================================


def _get_config_dir() -> Path:
    """Get platform-appropriate config directory."""
    if sys.platform == "win32":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata) / "fantasyyc"
    return Path.home() / ".fantasyyc"


CONFIG_DIR = _get_config_dir()
CONFIG_PATH = CONFIG_DIR / "config.toml"


# ============================================================================
# Data Types
# ============================================================================


@dataclass
class ChainConfig:
    """Ledger network and contract addresses."""

    chain_id: int = 127823  # Etherlink shadownet
    rpc_url: str = "https://node.shadownet.etherlink.com"
    tournament_manager: str = "0xdDAC8b96506E46123878e84d456f8Db1DCFd1092"
    pack_opener: str = "0xc408b65F312d5F4eb7688d621187F76e2C2A5f96"
    nft: str = "0x612ca7a970547087d2a4871eb313BEfd674073D8"
    request_timeout: int = 20  # seconds, per RPC call
    tx_timeout: int = 120  # seconds to wait for a receipt
    admin_private_key: str | None = None

    def contract_addresses(self) -> dict[str, str]:
        return {
            "tournament_manager": self.tournament_manager,
            "pack_opener": self.pack_opener,
            "nft": self.nft,
        }


@dataclass
class ContentConfig:
    """Content source (twitterapi.io) settings."""

    base_url: str = "https://api.twitterapi.io/twitter"
    api_key: str | None = None
    page_limit: int = 5
    page_delay: float = 1.0  # seconds between pages
    retries: int = 2
    retry_delay: float = 3.0
    timeout: float = 20.0


@dataclass
class ClassifierConfig:
    """External classifier chain. One tier per model, tried in order."""

    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = None
    models: list[str] = field(default_factory=lambda: ["google/gemini-2.5-flash", "openai/gpt-4o-mini"])
    timeout: float = 45.0
    call_delay: float = 2.0  # seconds between external calls


@dataclass
class ScoringConfig:
    db_path: str = "league.db"
    workers: int = 4
    entity_delay: float = 0.0  # extra pause after each entity (rate limits)
    multipliers: dict[Rarity, int] = field(default_factory=dict)
    hmac_secret: str | None = None


@dataclass
class SchedulerConfig:
    enabled: bool = True
    sync_interval: int = 30  # seconds
    daily_hour_utc: int = 0
    finalize_max_attempts: int = 3


@dataclass
class LeagueConfig:
    """Top-level configuration."""

    chain: ChainConfig = field(default_factory=ChainConfig)
    content: ContentConfig = field(default_factory=ContentConfig)
    classifier: ClassifierConfig = field(default_factory=ClassifierConfig)
    scoring: ScoringConfig = field(default_factory=ScoringConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    entities: list[TrackedEntity] = field(default_factory=lambda: list(DEFAULT_ENTITIES))
    admin_api_key: str | None = None

    def entity_table(self) -> EntityTable:
        return EntityTable(self.entities, self.scoring.multipliers)


# ============================================================================
# Parsing
# ============================================================================


def _expand(path: str | None) -> str | None:
    """Expand ~ in a path string."""
    if path is None:
        return None
    if path == ":memory:":
        return path
    return str(Path(path).expanduser())


def _section(raw: dict, name: str) -> dict:
    data = raw.get(name, {})
    return data if isinstance(data, dict) else {}


def _parse_chain(data: dict) -> ChainConfig:
    d = ChainConfig()
    return ChainConfig(
        chain_id=data.get("chain_id", d.chain_id),
        rpc_url=data.get("rpc_url", d.rpc_url),
        tournament_manager=data.get("tournament_manager", d.tournament_manager),
        pack_opener=data.get("pack_opener", d.pack_opener),
        nft=data.get("nft", d.nft),
        request_timeout=data.get("request_timeout", d.request_timeout),
        tx_timeout=data.get("tx_timeout", d.tx_timeout),
        admin_private_key=data.get("admin_private_key"),
    )


def _parse_content(data: dict) -> ContentConfig:
    d = ContentConfig()
    return ContentConfig(
        base_url=data.get("base_url", d.base_url),
        api_key=data.get("api_key"),
        page_limit=data.get("page_limit", d.page_limit),
        page_delay=data.get("page_delay", d.page_delay),
        retries=data.get("retries", d.retries),
        retry_delay=data.get("retry_delay", d.retry_delay),
        timeout=data.get("timeout", d.timeout),
    )


def _parse_classifier(data: dict) -> ClassifierConfig:
    d = ClassifierConfig()
    models = data.get("models", d.models)
    if isinstance(models, str):
        models = [models]
    return ClassifierConfig(
        base_url=data.get("base_url", d.base_url),
        api_key=data.get("api_key"),
        models=list(models),
        timeout=data.get("timeout", d.timeout),
        call_delay=data.get("call_delay", d.call_delay),
    )


def _parse_multipliers(data: dict) -> dict[Rarity, int]:
    multipliers = {}
    for label, value in data.items():
        try:
            multipliers[Rarity.from_label(label)] = int(value)
        except (ValueError, TypeError) as e:
            logger.warning(f"Ignoring multiplier {label}={value!r}: {e}")
    return multipliers


def _parse_scoring(data: dict) -> ScoringConfig:
    d = ScoringConfig()
    return ScoringConfig(
        db_path=_expand(data.get("db_path", d.db_path)),
        workers=data.get("workers", d.workers),
        entity_delay=data.get("entity_delay", d.entity_delay),
        multipliers=_parse_multipliers(_section(data, "multipliers")),
        hmac_secret=data.get("hmac_secret"),
    )


def _parse_scheduler(data: dict) -> SchedulerConfig:
    d = SchedulerConfig()
    return SchedulerConfig(
        enabled=data.get("enabled", d.enabled),
        sync_interval=data.get("sync_interval", d.sync_interval),
        daily_hour_utc=data.get("daily_hour_utc", d.daily_hour_utc),
        finalize_max_attempts=data.get("finalize_max_attempts", d.finalize_max_attempts),
    )


def _parse_entities(items: list) -> list[TrackedEntity]:
    entities = []
    for item in items:
        if not isinstance(item, dict):
            continue
        entities.append(
            TrackedEntity(
                id=int(item["id"]),
                name=item["name"],
                handle=item.get("handle", item["name"]).lstrip("@"),
                rarity=Rarity.from_label(item.get("rarity", "Common")),
            )
        )
    return entities


def _apply_env(config: LeagueConfig) -> None:
    """Environment variables override anything read from the file."""
    env = os.environ
    config.chain.admin_private_key = env.get("ADMIN_PRIVATE_KEY", config.chain.admin_private_key)
    config.chain.rpc_url = env.get("FANTASYYC_RPC_URL", config.chain.rpc_url)
    config.content.api_key = env.get("TWITTER_API_KEY", config.content.api_key)
    config.classifier.api_key = env.get("OPENROUTER_API_KEY", config.classifier.api_key)
    config.scoring.hmac_secret = env.get("SCORE_HMAC_SECRET", config.scoring.hmac_secret)
    config.admin_api_key = env.get("ADMIN_API_KEY", config.admin_api_key)


def load_config(path: Path | None = None) -> LeagueConfig:
    """
    Read config from TOML file, then apply env overrides.

    Args:
        path: Override config file path (default: FANTASYYC_CONFIG or ~/.fantasyyc/config.toml)

    Returns:
        LeagueConfig. Missing file or bad TOML falls back to defaults.
    """
    env_path = os.environ.get("FANTASYYC_CONFIG")
    config_path = path or (Path(env_path) if env_path else CONFIG_PATH)

    raw: dict = {}
    if config_path.exists():
        try:
            with open(config_path, "rb") as f:
                raw = tomllib.load(f)
        except Exception as e:
            logger.warning(f"Failed to parse {config_path}: {e}")
            raw = {}

    config = LeagueConfig(
        chain=_parse_chain(_section(raw, "chain")),
        content=_parse_content(_section(raw, "content")),
        classifier=_parse_classifier(_section(raw, "classifier")),
        scoring=_parse_scoring(_section(raw, "scoring")),
        scheduler=_parse_scheduler(_section(raw, "scheduler")),
        admin_api_key=_section(raw, "api").get("admin_key"),
    )

    entities = raw.get("entities")
    if isinstance(entities, list) and entities:
        try:
            config.entities = _parse_entities(entities)
            EntityTable(config.entities)  # validates the id range
            if len(config.entities) != POINTS_SIZE:
                raise ValueError(f"expected {POINTS_SIZE} entities, got {len(config.entities)}")
        except (KeyError, ValueError) as e:
            logger.warning(f"Invalid [[entities]] in {config_path}, using defaults: {e}")
            config.entities = list(DEFAULT_ENTITIES)

    _apply_env(config)
    return config
