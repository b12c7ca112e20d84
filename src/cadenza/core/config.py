"""
Configuration management for Cadenza components

Provides environment-based configuration with sensible defaults, optionally
loaded from a YAML file.
"""

import os
import logging
from pathlib import Path
from typing import Optional, Dict, Any, Union
from dataclasses import dataclass, field, asdict

import yaml

from .errors import ConfigurationError


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# Cache TTLs in seconds, by namespace
DEFAULT_NAMESPACE_TTLS: Dict[str, int] = {
    "now-playing": 10,            # Playback changes quickly
    "queue": 15,
    "devices": 60,
    "search": 30 * 60,
    "recommendations": 60 * 60,
    "playlists": 60 * 60,
    "artist-info": 24 * 60 * 60,  # Catalog data rarely changes
    "album-info": 24 * 60 * 60,
    "track-info": 24 * 60 * 60,
}


@dataclass
class PoolConfig:
    """Tenant client pool settings"""

    max_size: int = 100
    max_idle_seconds: float = 30 * 60
    sweep_interval_seconds: float = 5 * 60
    credential_ttl_seconds: int = 30 * 24 * 60 * 60
    refresh_skew_seconds: float = 60

    def __post_init__(self):
        """Load configuration from environment variables"""
        self.max_size = _env_int('CADENZA_POOL_MAX_SIZE', self.max_size)
        self.max_idle_seconds = _env_float('CADENZA_POOL_MAX_IDLE', self.max_idle_seconds)
        self.sweep_interval_seconds = _env_float('CADENZA_POOL_SWEEP_INTERVAL', self.sweep_interval_seconds)
        self.credential_ttl_seconds = _env_int('CADENZA_CREDENTIAL_TTL', self.credential_ttl_seconds)

    def validate(self) -> bool:
        if self.max_size <= 0:
            raise ConfigurationError("pool max_size must be positive", data={"max_size": self.max_size})
        if self.max_idle_seconds <= 0 or self.sweep_interval_seconds <= 0:
            raise ConfigurationError("pool idle and sweep intervals must be positive")
        if self.credential_ttl_seconds <= 0:
            raise ConfigurationError("credential TTL must be positive")
        return True


@dataclass
class CacheConfig:
    """Read-through cache settings"""

    key_prefix: str = "cache"
    default_ttl_seconds: int = 60 * 60
    namespace_ttls: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_NAMESPACE_TTLS))

    def __post_init__(self):
        self.default_ttl_seconds = _env_int('CADENZA_CACHE_DEFAULT_TTL', self.default_ttl_seconds)

    def validate(self) -> bool:
        if self.default_ttl_seconds <= 0:
            raise ConfigurationError("cache default TTL must be positive")
        for namespace, ttl in self.namespace_ttls.items():
            if ttl <= 0:
                raise ConfigurationError(
                    f"cache TTL for namespace {namespace} must be positive",
                    data={"namespace": namespace, "ttl": ttl}
                )
        return True


@dataclass
class QueueConfig:
    """Job queue settings"""

    max_jobs_per_queue: int = 1000
    pending_job_ttl_seconds: int = 7 * 24 * 60 * 60
    finished_job_ttl_seconds: int = 24 * 60 * 60
    abandon_threshold_seconds: int = 60 * 60
    default_priority: int = 10

    def __post_init__(self):
        self.max_jobs_per_queue = _env_int('CADENZA_MAX_JOBS_PER_QUEUE', self.max_jobs_per_queue)
        self.pending_job_ttl_seconds = _env_int('CADENZA_PENDING_JOB_TTL', self.pending_job_ttl_seconds)
        self.finished_job_ttl_seconds = _env_int('CADENZA_FINISHED_JOB_TTL', self.finished_job_ttl_seconds)

    def validate(self) -> bool:
        if self.max_jobs_per_queue <= 0:
            raise ConfigurationError("max_jobs_per_queue must be positive")
        if self.finished_job_ttl_seconds <= 0 or self.pending_job_ttl_seconds <= 0:
            raise ConfigurationError("job TTLs must be positive")
        if self.abandon_threshold_seconds >= self.pending_job_ttl_seconds:
            raise ConfigurationError("abandon threshold must be shorter than the pending job TTL")
        return True


@dataclass
class WorkerConfig:
    """Worker loop settings"""

    concurrency: int = 1
    poll_interval_seconds: float = 1.0
    default_timeout_ms: int = 60_000
    reconcile_interval_seconds: float = 30 * 60
    shutdown_grace_seconds: float = 30.0

    def __post_init__(self):
        self.concurrency = _env_int('CADENZA_WORKER_CONCURRENCY', self.concurrency)
        self.poll_interval_seconds = _env_float('CADENZA_WORKER_POLL_INTERVAL', self.poll_interval_seconds)
        self.default_timeout_ms = _env_int('CADENZA_JOB_TIMEOUT_MS', self.default_timeout_ms)

    def validate(self) -> bool:
        if self.concurrency <= 0:
            raise ConfigurationError("worker concurrency must be positive")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll interval must be positive")
        if self.default_timeout_ms <= 0:
            raise ConfigurationError("default job timeout must be positive")
        return True


@dataclass
class ProviderConfig:
    """Streaming service endpoints and OAuth client settings"""

    api_base_url: str = "https://api.spotify.com/v1"
    token_url: str = "https://accounts.spotify.com/api/token"
    client_id: str = ""
    client_secret: str = ""
    request_timeout_seconds: float = 10.0

    def __post_init__(self):
        self.api_base_url = os.getenv('CADENZA_API_BASE_URL', self.api_base_url)
        self.token_url = os.getenv('CADENZA_TOKEN_URL', self.token_url)
        self.client_id = os.getenv('CADENZA_CLIENT_ID', self.client_id)
        self.client_secret = os.getenv('CADENZA_CLIENT_SECRET', self.client_secret)

    @property
    def can_refresh(self) -> bool:
        return bool(self.client_id and self.client_secret)

    def validate(self) -> bool:
        if self.request_timeout_seconds <= 0:
            raise ConfigurationError("request timeout must be positive")
        return True


@dataclass
class CadenzaConfig:
    """Top level configuration"""

    redis_url: str = "redis://localhost:6379"
    redis_db: int = 0

    # Logging
    log_level: str = "INFO"
    log_format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    pool: PoolConfig = field(default_factory=PoolConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)

    def __post_init__(self):
        self.redis_url = os.getenv('REDIS_URL', self.redis_url)
        self.redis_db = _env_int('REDIS_DB', self.redis_db)
        self.log_level = os.getenv('LOG_LEVEL', self.log_level)

    def validate(self) -> bool:
        """Validate configuration"""
        if not self.redis_url:
            raise ConfigurationError("redis_url is required")
        self.pool.validate()
        self.cache.validate()
        self.queue.validate()
        self.worker.validate()
        self.provider.validate()
        return True

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary"""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CadenzaConfig':
        """Create configuration from dictionary"""
        data = dict(data or {})
        sections = {
            'pool': PoolConfig,
            'cache': CacheConfig,
            'queue': QueueConfig,
            'worker': WorkerConfig,
            'provider': ProviderConfig,
        }
        try:
            for name, section_cls in sections.items():
                if name in data and isinstance(data[name], dict):
                    data[name] = section_cls(**data[name])
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Unknown configuration key: {e}", cause=e)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'CadenzaConfig':
        """Load configuration from a YAML file"""
        config_file = Path(path)
        if not config_file.exists():
            raise ConfigurationError(f"Config file not found: {config_file}", data={"path": str(config_file)})
        with open(config_file, 'r') as f:
            return cls.from_dict(yaml.safe_load(f) or {})


def load_config(path: Optional[Union[str, Path]] = None) -> CadenzaConfig:
    """Load configuration from a file, falling back to ~/.cadenza/config.yaml"""
    if path:
        config = CadenzaConfig.from_yaml(path)
    else:
        default_file = Path.home() / '.cadenza' / 'config.yaml'
        config = CadenzaConfig.from_yaml(default_file) if default_file.exists() else CadenzaConfig()
    config.validate()
    return config


def setup_logging(config: CadenzaConfig):
    """Setup logging based on configuration"""
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper()),
        format=config.log_format
    )

    # Set specific loggers to appropriate levels
    logging.getLogger('redis').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)

    if config.log_level.upper() == 'DEBUG':
        logging.getLogger('cadenza').setLevel(logging.DEBUG)
