"""
Runtime settings for the decision spine, read from the environment (and .env).

Design principles:
- Operational knobs only (ledger backend, pinned version, timeouts)
- Clinical thresholds live in published snapshots, never here
- Invalid combinations fail at startup
"""

import os
from functools import lru_cache
from typing import Literal, cast

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# SPINE_* variables may come from a local .env
load_dotenv()


class EngineConfig(BaseModel):
    """Decision spine engine configuration."""

    default_tenant: str = Field(default="default", description="Tenant used when none is given")
    config_version: str | None = Field(
        default=None, description="Pinned threshold version; latest published when unset"
    )
    history_limit: int = Field(
        default=500,
        gt=0,
        description=(
            "Ledger entries read for trend and days-in-state; the whole ledger is read "
            "when every entry in the window shares one class"
        ),
    )
    max_conflict_retries: int = Field(
        default=3, ge=0, description="Re-evaluations after a ledger head conflict"
    )


class ThresholdStoreConfig(BaseModel):
    """Where published threshold snapshots are read from."""

    snapshot_dir: str | None = Field(
        default=None, description="Directory of JSON snapshots; built-in defaults when unset"
    )


class LedgerConfig(BaseModel):
    """Judgment ledger persistence."""

    backend: Literal["memory", "sqlite"] = Field(default="memory", description="Ledger backend")
    sqlite_path: str = Field(default="./judgment_ledger.db", description="SQLite ledger path")
    timeout_seconds: float = Field(default=5.0, gt=0.0, description="SQLite lock timeout")


class CollectionConfig(BaseModel):
    """Raw signal collection from source providers."""

    window_hours: float = Field(default=4.0, gt=0.0, description="Look-back window for records")
    source_timeout_seconds: float = Field(
        default=10.0, gt=0.0, description="Timeout for a single source fetch"
    )
    max_concurrent_sources: int = Field(
        default=10, gt=0, description="Maximum number of concurrent source fetches"
    )


class LoggingConfig(BaseModel):
    """How structlog renders events."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    format: Literal["json", "console"] = Field(default="json", description="Logging format")


class AppConfig(BaseModel):
    """Everything a spine process needs to wire an engine."""

    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Environment"
    )
    debug: bool = Field(default=False, description="Enable debug mode")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    thresholds: ThresholdStoreConfig = Field(default_factory=ThresholdStoreConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    collection: CollectionConfig = Field(default_factory=CollectionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def debug_only_in_dev(self) -> "AppConfig":
        """Debug output may include resident data; development only."""
        if self.debug and self.environment != "development":
            raise ValueError("debug mode is only allowed in development environment")
        return self

    @model_validator(mode="after")
    def memory_ledger_not_in_production(self) -> "AppConfig":
        """An in-memory ledger loses history on restart."""
        if self.environment == "production" and self.ledger.backend == "memory":
            raise ValueError("production requires a persistent ledger backend")
        return self


def load_config_from_env() -> AppConfig:
    """Build AppConfig from ENVIRONMENT, LOG_LEVEL and the SPINE_* variables."""

    def _env_to_literal(val: str) -> Literal["development", "staging", "production"]:
        v = val.strip().lower()
        if v in {"dev", "development"}:
            return "development"
        if v in {"stage", "staging"}:
            return "staging"
        return "production"

    def _level_to_literal(val: str) -> Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
        v = val.strip().upper()
        return cast(
            Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
            v if v in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"} else "INFO",
        )

    def _backend_to_literal(val: str) -> Literal["memory", "sqlite"]:
        return "sqlite" if val.strip().lower() == "sqlite" else "memory"

    def _optional(val: str | None) -> str | None:
        if val is None or not val.strip():
            return None
        return val.strip()

    environment = _env_to_literal(os.getenv("ENVIRONMENT", "development"))
    debug = environment == "development"

    engine_config = EngineConfig(
        default_tenant=os.getenv("SPINE_DEFAULT_TENANT", "default"),
        config_version=_optional(os.getenv("SPINE_CONFIG_VERSION")),
        history_limit=int(os.getenv("SPINE_HISTORY_LIMIT", "500")),
        max_conflict_retries=int(os.getenv("SPINE_MAX_CONFLICT_RETRIES", "3")),
    )

    threshold_config = ThresholdStoreConfig(
        snapshot_dir=_optional(os.getenv("SPINE_THRESHOLD_DIR")),
    )

    ledger_config = LedgerConfig(
        backend=_backend_to_literal(os.getenv("SPINE_LEDGER_BACKEND", "memory")),
        sqlite_path=os.getenv("SPINE_LEDGER_PATH", "./judgment_ledger.db"),
    )

    collection_config = CollectionConfig(
        window_hours=float(os.getenv("SPINE_COLLECTION_WINDOW_HOURS", "4.0")),
        source_timeout_seconds=float(os.getenv("SPINE_SOURCE_TIMEOUT_SECONDS", "10.0")),
    )

    logging_config = LoggingConfig(
        level=_level_to_literal(os.getenv("LOG_LEVEL", "INFO")),
        format="console" if debug else "json",
    )

    return AppConfig(
        environment=environment,
        debug=debug,
        engine=engine_config,
        thresholds=threshold_config,
        ledger=ledger_config,
        collection=collection_config,
        logging=logging_config,
    )


@lru_cache
def get_config() -> AppConfig:
    """Process-wide AppConfig, loaded once."""
    return load_config_from_env()


def validate_config() -> None:
    """Fail fast on settings that would break the first evaluation."""
    try:
        config = get_config()
        print(f"Configuration loaded for {config.environment} environment")

        if config.thresholds.snapshot_dir and not os.path.isdir(config.thresholds.snapshot_dir):
            raise ValueError(
                f"threshold snapshot directory does not exist: {config.thresholds.snapshot_dir}"
            )

    except Exception as e:
        print(f"Configuration validation failed: {e}")
        raise


def print_config_summary() -> None:
    """Print the effective settings, as shown by `decision-spine config`."""
    config = get_config()

    print("\nCONFIGURATION SUMMARY")
    print(f"Environment: {config.environment}")
    print(f"Debug Mode: {config.debug}")
    print(f"Log Level: {config.logging.level}")

    print("\nENGINE")
    print(f"Default Tenant: {config.engine.default_tenant}")
    print(f"Config Version: {config.engine.config_version or 'latest published'}")
    print(f"History Limit: {config.engine.history_limit}")

    print("\nTHRESHOLDS")
    print(f"Snapshot Directory: {config.thresholds.snapshot_dir or 'built-in defaults'}")

    print("\nLEDGER")
    print(f"Backend: {config.ledger.backend}")
    if config.ledger.backend == "sqlite":
        print(f"Path: {config.ledger.sqlite_path}")

    print("\nCOLLECTION")
    print(f"Window: {config.collection.window_hours}h")
    print(f"Source Timeout: {config.collection.source_timeout_seconds}s")


if __name__ == "__main__":
    validate_config()
    print_config_summary()
