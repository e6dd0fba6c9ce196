"""
Audit configuration management.

Settings come from a YAML file and are overridden by DQ_AUDIT_* environment
variables (a .env file is honoured). Database settings keep their DB_*
variables, read by the connection pool.

Expected YAML format:
```yaml
audit:
  window_size: 7
  top_k: 3
  data_dir: data
  source_timeout_seconds: 60
  sink_timeout_seconds: 30
  max_workers: 4
  source_retries: 1
```
"""

import os
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field

ENV_PREFIX = "DQ_AUDIT_"
DEFAULT_CONFIG_PATH = "config/audit.yaml"


class AuditConfig(BaseModel):
    """
    Runtime settings of the audit.

    Attributes:
        window_size: Rolling window length in observed rows
        top_k: Number of worst files kept per load date
        data_dir: Base directory of the CSV feeds (one sub-directory per load date)
        events_glob: File pattern of event files inside a load date directory
        transactions_glob: File pattern of transaction files
        source_timeout_seconds: Bound on one feed fetch
        sink_timeout_seconds: Bound on one audit table upsert
        max_workers: Threads used for per-file partitions
        source_retries: Extra attempts after a failed fetch
        retry_delay_seconds: Pause between fetch attempts
        log_level: Logging level
        log_format: "json" or "text"
    """

    window_size: int = Field(7, ge=1)
    top_k: int = Field(3, ge=1)
    data_dir: str = "data"
    events_glob: str = "events*.csv"
    transactions_glob: str = "transactions*.csv"
    source_timeout_seconds: float = Field(60.0, gt=0)
    sink_timeout_seconds: float = Field(30.0, gt=0)
    max_workers: int = Field(4, ge=1)
    source_retries: int = Field(0, ge=0)
    retry_delay_seconds: float = Field(2.0, ge=0)
    log_level: str = "INFO"
    log_format: str = Field("json", pattern="^(json|text)$")


def _env_overrides(environ: dict[str, str]) -> dict[str, Any]:
    overrides = {}
    for name in AuditConfig.model_fields:
        value = environ.get(f"{ENV_PREFIX}{name.upper()}")
        if value is not None:
            overrides[name] = value
    return overrides


class AuditConfigLoader:
    """
    Loads AuditConfig from YAML plus environment overrides.

    A missing file is only an error when the path was given explicitly.
    """

    def __init__(self, config_path: str | Path | None = None, env_file: str | Path | None = None):
        self.explicit = config_path is not None
        self.config_path = Path(config_path or os.getenv(f"{ENV_PREFIX}CONFIG", DEFAULT_CONFIG_PATH))
        self.env_file = env_file

        if self.explicit and not self.config_path.exists():
            raise FileNotFoundError(f"Audit configuration file not found: {config_path}")

    def _load_file(self) -> dict[str, Any]:
        if not self.config_path.exists():
            return {}

        with open(self.config_path) as f:
            config = yaml.safe_load(f)

        if not config:
            return {}
        if "audit" not in config or not isinstance(config["audit"], dict):
            raise ValueError("Configuration file must contain an 'audit' mapping")
        return config["audit"]

    def load(self) -> AuditConfig:
        """
        Build the configuration.

        Raises:
            ValueError: If the YAML layout is wrong
            pydantic.ValidationError: If a value is out of range
        """
        if self.env_file:
            load_dotenv(self.env_file, override=False)
        else:
            load_dotenv(override=False)

        values = self._load_file()
        values.update(_env_overrides(dict(os.environ)))
        return AuditConfig(**values)


def load_config(config_path: str | Path | None = None, env_file: str | Path | None = None) -> AuditConfig:
    return AuditConfigLoader(config_path, env_file).load()
