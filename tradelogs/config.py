"""
Configuration loading: YAML with ${ENV} expansion, validated with pydantic.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigError
from .events import KNOWN_SCHEMAS
from .normalize import normalize_address
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _unexpanded_to_none(value):
    """Optional URLs left as ${VAR} because the variable is unset"""
    if isinstance(value, str) and (not value.strip() or value.strip().startswith('${')):
        return None
    return value


class ChainConfig(BaseModel):
    rpc_url: str
    chain_id: int = 1
    request_timeout: float = Field(30.0, gt=0)
    poa: bool = False


class ContractsConfig(BaseModel):
    addresses: List[str]

    @field_validator('addresses', mode='before')
    @classmethod
    def parse_addresses(cls, v):
        """Handle both string and int addresses (YAML parses bare hex as int)"""
        if isinstance(v, (str, int)):
            v = [v]
        return [normalize_address(a) for a in v if str(a).strip() not in ('', 'None', 'none', 'null')]

    @model_validator(mode='after')
    def require_addresses(self):
        if not self.addresses:
            raise ValueError("at least one contract address is required")
        return self


class EventBinding(BaseModel):
    decoder: str
    topic: Optional[str] = None

    @field_validator('decoder')
    @classmethod
    def known_decoder(cls, v):
        if v not in KNOWN_SCHEMAS:
            raise ValueError(f"unknown decoder {v!r}; known: {', '.join(sorted(KNOWN_SCHEMAS))}")
        return v


class CrawlerSettings(BaseModel):
    start_block: int = Field(0, ge=0)
    confirmation_lag: int = Field(7, ge=0)
    max_window_size: int = Field(100, ge=1)
    poll_interval: float = Field(15.0, gt=0)
    enrichment_workers: int = Field(4, ge=1)
    volume_excluded_reserves: List[str] = Field(default_factory=list)

    @field_validator('volume_excluded_reserves', mode='before')
    @classmethod
    def parse_exclusions(cls, v):
        if v is None:
            return []
        values = []
        for item in v:
            s = str(item).strip()
            # bytes32 reserve ids stay hex, 20-byte values are addresses
            values.append(normalize_address(item) if isinstance(item, int) or len(s) == 42 else s.lower())
        return values


class RetryConfig(BaseModel):
    max_attempts: int = Field(5, ge=1)
    base_delay: float = Field(0.5, ge=0)
    max_delay: float = Field(8.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    min_split_span: int = Field(0, ge=0)

    def policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            multiplier=self.multiplier,
            min_split_span=self.min_split_span,
        )


class DatabaseConfig(BaseModel):
    url: Optional[str] = None
    crawler_name: str = "tradelogs_v4"
    publish_outbox: bool = True

    @field_validator('url', mode='before')
    @classmethod
    def unset_env(cls, v):
        return _unexpanded_to_none(v)


class RedisConfig(BaseModel):
    url: Optional[str] = None
    stream_key: str = "tradelogs:events"
    dlq_key: str = "tradelogs:events:dlq"

    @field_validator('url', mode='before')
    @classmethod
    def unset_env(cls, v):
        return _unexpanded_to_none(v)


class CrawlerConfig(BaseModel):
    chain: ChainConfig
    contracts: ContractsConfig
    events: List[EventBinding] = Field(
        default_factory=lambda: [EventBinding(decoder=name) for name in KNOWN_SCHEMAS]
    )
    crawler: CrawlerSettings = Field(default_factory=CrawlerSettings)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    log_level: str = "INFO"

    @field_validator('events', mode='before')
    @classmethod
    def parse_events(cls, v):
        """Accept plain decoder names or {decoder, topic} mappings"""
        if v is None:
            return v
        return [{'decoder': item} if isinstance(item, str) else item for item in v]

    @field_validator('log_level')
    @classmethod
    def parse_log_level(cls, v):
        level = str(v).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"invalid log level {v!r}")
        return level

    def event_bindings(self) -> List[tuple]:
        return [(binding.decoder, binding.topic) for binding in self.events]


def load_config(config_path: str = "config.yaml", env_file: Optional[str] = None) -> CrawlerConfig:
    """Load and expand environment variables in config"""
    load_dotenv(env_file)
    try:
        with open(config_path, 'r') as f:
            config_content = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e

    config_content = os.path.expandvars(config_content)
    try:
        data: Dict[str, Any] = yaml.safe_load(config_content) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {config_path}: {e}") from e

    config = parse_config(data)
    logger.info(f"Loaded configuration for {len(config.contracts.addresses)} contracts, {len(config.events)} event decoders")
    return config


def parse_config(data: Dict[str, Any]) -> CrawlerConfig:
    try:
        return CrawlerConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    logging.getLogger().setLevel(getattr(logging, level.upper(), logging.INFO))
