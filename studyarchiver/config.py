"""
Configuration management for studyarchiver.

Loads and validates the archiver YAML configuration file. Bucket roles are
held in an immutable BucketConfig; use with_buckets() to get a rebound copy.
"""

import os
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


DEFAULT_LOCK_TTL_SECONDS = 60 * 60

ENV_BUCKET_VARS = {
    "sim": "STUDYARCHIVER_SIM_BUCKET",
    "study": "STUDYARCHIVER_STUDY_BUCKET",
    "lock": "STUDYARCHIVER_LOCK_BUCKET",
}


class ConfigError(Exception):
    """Configuration validation error."""
    pass


@dataclass(frozen=True)
class BucketConfig:
    """
    The three storage locations a pass works with.

    Attributes:
        sim: Source bucket holding staged simulation studies
        study: Destination bucket receiving study .zip archives
        lock: Bucket holding lock marker objects
    """
    sim: str
    study: str
    lock: str

    def validate(self) -> None:
        """Raise ConfigError if any role is missing or not a string."""
        for role in ("sim", "study", "lock"):
            value = getattr(self, role)
            if not isinstance(value, str) or not value.strip():
                raise ConfigError(f"bucket '{role}' must be a non-empty string, got: {value!r}")

    def with_buckets(self, **changes: str) -> "BucketConfig":
        """Return a new BucketConfig with the given roles replaced."""
        unknown = set(changes) - {"sim", "study", "lock"}
        if unknown:
            raise ConfigError(f"unknown bucket role(s): {', '.join(sorted(unknown))}")
        rebound = replace(self, **changes)
        rebound.validate()
        return rebound

    def to_dict(self) -> Dict[str, str]:
        return {"sim": self.sim, "study": self.study, "lock": self.lock}


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy for storage calls.

    Attributes:
        retries: Retries after the first attempt (attempt ceiling is retries + 1)
        factor: Multiplier applied to the delay after each failure
        min_timeout: Delay in seconds before the first retry
        max_timeout: Upper bound on any single delay in seconds
        randomize: Multiply each delay by a random factor in [1, 2)
    """
    retries: int = 3
    factor: float = 2.0
    min_timeout: float = 1.0
    max_timeout: float = 10.0
    randomize: bool = True

    @property
    def max_attempts(self) -> int:
        return self.retries + 1

    def validate(self) -> None:
        if self.retries < 0:
            raise ConfigError("retry.retries must be >= 0")
        if self.factor < 1:
            raise ConfigError("retry.factor must be >= 1")
        if self.min_timeout < 0 or self.max_timeout < self.min_timeout:
            raise ConfigError("retry timeouts must satisfy 0 <= min_timeout <= max_timeout")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            retries=int(data.get("retries", 3)),
            factor=float(data.get("factor", 2.0)),
            min_timeout=float(data.get("min_timeout", 1.0)),
            max_timeout=float(data.get("max_timeout", 10.0)),
            randomize=bool(data.get("randomize", True)),
        )


@dataclass(frozen=True)
class ArchiverConfig:
    """Complete archiver configuration."""

    buckets: BucketConfig
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    verify_concurrency: int = 8
    checksum_concurrency: int = 8
    progress: bool = False
    logging: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate entire configuration."""
        self.buckets.validate()
        self.retry.validate()
        if self.lock_ttl_seconds <= 0:
            raise ConfigError("lock.ttl_seconds must be positive")
        if self.verify_concurrency < 1 or self.checksum_concurrency < 1:
            raise ConfigError("concurrency values must be >= 1")

    def with_buckets(self, **changes: str) -> "ArchiverConfig":
        """Return a copy of this config with bucket roles replaced."""
        return replace(self, buckets=self.buckets.with_buckets(**changes))

    def get_log_file_path(self) -> Path:
        """Get log file path with date interpolation."""
        log_output = self.logging.get("output", "logs/studyarchiver-{date}.log")
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output)

    def get_log_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "structured")

    def should_log_to_console(self) -> bool:
        return self.logging.get("console", True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], env: Optional[Dict[str, str]] = None) -> "ArchiverConfig":
        """
        Build config from a parsed YAML mapping.

        Bucket roles from the environment (STUDYARCHIVER_*_BUCKET) take
        precedence over the mapping.
        """
        env = os.environ if env is None else env
        buckets_data = dict(data.get("buckets") or {})
        for role, var in ENV_BUCKET_VARS.items():
            if env.get(var):
                buckets_data[role] = env[var]

        concurrency = data.get("concurrency") or {}
        config = cls(
            buckets=BucketConfig(
                sim=buckets_data.get("sim", ""),
                study=buckets_data.get("study", ""),
                lock=buckets_data.get("lock", ""),
            ),
            retry=RetryPolicy.from_dict(data.get("retry") or {}),
            lock_ttl_seconds=int((data.get("lock") or {}).get("ttl_seconds", DEFAULT_LOCK_TTL_SECONDS)),
            verify_concurrency=int(concurrency.get("verify", 8)),
            checksum_concurrency=int(concurrency.get("checksum", 8)),
            progress=bool(data.get("progress", False)),
            logging=dict(data.get("logging") or {}),
        )
        config.validate()
        return config


def _load_yaml(config_path: Path) -> Dict[str, Any]:
    """Load and parse YAML configuration file."""
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, "r") as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML syntax: {e}")

    if not config:
        raise ConfigError("Configuration file is empty")
    if not isinstance(config, dict):
        raise ConfigError("Configuration file must contain a mapping")
    return config


def load_config(config_path: Optional[Path] = None, **bucket_overrides: Optional[str]) -> ArchiverConfig:
    """
    Load archiver configuration.

    Args:
        config_path: YAML file. When omitted, buckets come from the
            environment and every other setting uses its default.
        **bucket_overrides: sim/study/lock values that win over file and env

    Returns:
        Validated ArchiverConfig

    Raises:
        ConfigError: If config is invalid or missing
    """
    data = _load_yaml(Path(config_path)) if config_path is not None else {}
    overrides = {role: value for role, value in bucket_overrides.items() if value}
    if overrides:
        data = dict(data)
        data["buckets"] = {**(data.get("buckets") or {}), **overrides}
        env = {k: v for k, v in os.environ.items() if k not in {ENV_BUCKET_VARS[r] for r in overrides}}
        return ArchiverConfig.from_dict(data, env=env)
    return ArchiverConfig.from_dict(data)
