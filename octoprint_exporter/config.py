"""Configuration models using Pydantic for validation."""
from typing import Any, Dict, Mapping, Optional
import os

from pydantic import BaseModel, Field, ValidationError, field_validator

MIN_INTERVAL_S = 2
TLS_PORT = 443
TRUTHY = {"1", "true", "yes", "on"}


class ConfigurationError(Exception):
    """Startup configuration is missing or invalid."""


class UpstreamConfig(BaseModel):
    """Connection settings for the OctoPrint instance."""
    host: str = "127.0.0.1"
    port: int = Field(80, ge=1, le=65535)
    api_key: str
    ssl: bool = False
    timeout_s: float = Field(5.0, gt=0)

    @field_validator("api_key")
    @classmethod
    def require_api_key(cls, v):
        if not v or not v.strip():
            raise ValueError("API key must not be empty")
        return v

    @property
    def effective_port(self) -> int:
        """TLS always talks to 443."""
        return TLS_PORT if self.ssl else self.port


class ServerConfig(BaseModel):
    """Metrics endpoint settings."""
    port: int = Field(9529, ge=1, le=65535)
    bind_address: str = "0.0.0.0"
    path: str = "/metrics"
    timeout_keep_alive_s: int = 20
    # closes connections with no traffic, including ones stuck mid-request
    idle_timeout_s: float = Field(20.0, gt=0)
    limit_concurrency: int = Field(100, ge=1)

    @field_validator("path")
    @classmethod
    def leading_slash(cls, v):
        return v if v.startswith("/") else f"/{v}"


class LoggingConfig(BaseModel):
    level: str = "INFO"

    @field_validator("level")
    @classmethod
    def known_level(cls, v):
        level = v.upper()
        if level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            raise ValueError(f"Invalid log level: {v}")
        return level


class ExporterConfig(BaseModel):
    """Root configuration model."""
    upstream: UpstreamConfig
    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    interval_s: int = 10
    runtime_metrics: bool = False

    @field_validator("interval_s")
    @classmethod
    def clamp_interval(cls, v):
        """Polling faster than every 2 seconds is silently slowed down."""
        return max(v, MIN_INTERVAL_S)


# env var -> (section, key); section None means top level
ENV_OVERRIDES = {
    "OCTOPRINT_PORT": ("server", "port"),
    "OCTOPRINT_BIND": ("server", "bind_address"),
    "OCTOPRINT_INTERVAL": (None, "interval_s"),
    "OCTOPRINT_HOSTIP": ("upstream", "host"),
    "OCTOPRINT_HOSTPORT": ("upstream", "port"),
    "OCTOPRINT_APIKEY": ("upstream", "api_key"),
    "OCTOPRINT_HOSTSSL": ("upstream", "ssl"),
    "OCTOPRINT_TIMEOUT": ("upstream", "timeout_s"),
    "OCTOPRINT_DEFAULTMETRICS": (None, "runtime_metrics"),
    "LOG_LEVEL": ("logging", "level"),
}

# argparse dest -> (section, key)
ARG_OVERRIDES = {
    "port": ("server", "port"),
    "bind": ("server", "bind_address"),
    "interval": (None, "interval_s"),
    "hostip": ("upstream", "host"),
    "hostport": ("upstream", "port"),
    "apikey": ("upstream", "api_key"),
    "hostssl": ("upstream", "ssl"),
    "timeout": ("upstream", "timeout_s"),
    "collectdefault": (None, "runtime_metrics"),
    "log_level": ("logging", "level"),
}


def _put(raw: Dict[str, Any], section: Optional[str], key: str, value: Any):
    if section is None:
        raw[key] = value
    else:
        raw.setdefault(section, {})[key] = value


def _read_yaml(config_path: str) -> Dict[str, Any]:
    import yaml

    if not os.path.exists(config_path):
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    if not isinstance(raw_config, dict):
        raise ConfigurationError(f"Configuration file {config_path} must contain a mapping")
    return raw_config


def load_config(
    args: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ExporterConfig:
    """
    Build the exporter configuration.

    Later sources win: defaults, then the YAML file named by ``config``,
    then environment variables, then command-line values. Flags that were
    not given on the command line are expected to be None.
    """
    args = dict(args or {})
    env = os.environ if env is None else env

    raw: Dict[str, Any] = {}
    if args.get("config"):
        raw = _read_yaml(args["config"])

    for name, (section, key) in ENV_OVERRIDES.items():
        value = env.get(name)
        if value is None or value == "":
            continue
        if key in ("ssl", "runtime_metrics"):
            value = value.strip().lower() in TRUTHY
        _put(raw, section, key, value)

    # DEBUG=<anything> turns on debug output
    if env.get("DEBUG"):
        _put(raw, "logging", "level", "DEBUG")

    for name, (section, key) in ARG_OVERRIDES.items():
        value = args.get(name)
        # store_true flags default to False and must not clear env settings
        if value is None or value is False:
            continue
        _put(raw, section, key, value)

    upstream = raw.get("upstream") or {}
    if not isinstance(upstream, dict) or not upstream.get("api_key"):
        raise ConfigurationError(
            "Missing API key. Use parameter --apikey or environment variable "
            "OCTOPRINT_APIKEY to set it."
        )

    try:
        return ExporterConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e
