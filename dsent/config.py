"""
Configuration management for dsent.

All configuration is done via environment variables. This module provides
typed configuration classes with validation.

Invariants:
    - All settings have sensible defaults for local development
    - The datastore backend MUST have an explicit project id
    - Credentials paths are never logged

How to change safely:
    - Add new settings with defaults that maintain backward compatibility
    - Keep from_env() and the dataclass defaults in sync
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from enum import Enum

logger = logging.getLogger(__name__)


class StoreBackend(Enum):
    """Supported store backends."""

    MEMORY = "memory"
    DATASTORE = "datastore"


@dataclass(frozen=True)
class DatastoreConfig:
    """Google Cloud Datastore backend configuration.

    Attributes:
        project_id: GCP project id
        emulator_host: Datastore emulator address (host:port), for local testing
        database: Named database (empty string for the default database)
        credentials_file: Service account JSON path (optional, uses ADC otherwise)
    """

    project_id: str | None = None
    emulator_host: str | None = None
    database: str = ""
    credentials_file: str | None = None

    @classmethod
    def from_env(cls) -> DatastoreConfig:
        """Load configuration from environment variables."""
        return cls(
            project_id=os.getenv("DATASTORE_PROJECT_ID"),
            emulator_host=os.getenv("DATASTORE_EMULATOR_HOST"),
            database=os.getenv("DATASTORE_DATABASE", ""),
            credentials_file=os.getenv("GOOGLE_APPLICATION_CREDENTIALS"),
        )


@dataclass(frozen=True)
class MemoryStoreConfig:
    """In-memory backend configuration.

    Attributes:
        latency_ms: Simulated delay of every store round trip
    """

    latency_ms: int = 0

    @classmethod
    def from_env(cls) -> MemoryStoreConfig:
        """Load configuration from environment variables."""
        return cls(latency_ms=int(os.getenv("DSENT_MEMORY_LATENCY_MS", "0")))


@dataclass(frozen=True)
class SessionConfig:
    """Entity session defaults.

    Attributes:
        namespace: Namespace stamped on every derived key
        operation_timeout_seconds: Deadline for non-transactional operations (0 = none)
    """

    namespace: str = ""
    operation_timeout_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> SessionConfig:
        """Load configuration from environment variables."""
        return cls(
            namespace=os.getenv("DSENT_NAMESPACE", ""),
            operation_timeout_seconds=float(os.getenv("DSENT_OPERATION_TIMEOUT_SECONDS", "0")),
        )

    @property
    def operation_timeout(self) -> float | None:
        return self.operation_timeout_seconds or None


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration.

    Attributes:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_format: Log format (json, text)
    """

    log_level: str = "INFO"
    log_format: str = "json"

    @classmethod
    def from_env(cls) -> ObservabilityConfig:
        """Load configuration from environment variables."""
        return cls(
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            log_format=os.getenv("LOG_FORMAT", "json"),
        )


@dataclass
class DsEntConfig:
    """Complete configuration.

    Attributes:
        store_backend: Which store backend to use
        datastore: Datastore configuration (if store_backend is DATASTORE)
        memory: In-memory store configuration (if store_backend is MEMORY)
        session: Entity session defaults
        observability: Logging configuration
    """

    store_backend: StoreBackend = StoreBackend.MEMORY
    datastore: DatastoreConfig = field(default_factory=DatastoreConfig)
    memory: MemoryStoreConfig = field(default_factory=MemoryStoreConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls) -> DsEntConfig:
        """Load complete configuration from environment variables.

        Returns:
            DsEntConfig with all sections populated from environment.

        Raises:
            ValueError: If required configuration is missing or invalid.
        """
        backend_str = os.getenv("DSENT_STORE_BACKEND", "memory").lower()
        try:
            store_backend = StoreBackend(backend_str)
        except ValueError:
            raise ValueError(
                f"Invalid DSENT_STORE_BACKEND '{backend_str}'. Must be one of: memory, datastore"
            )

        config = cls(
            store_backend=store_backend,
            datastore=DatastoreConfig.from_env(),
            memory=MemoryStoreConfig.from_env(),
            session=SessionConfig.from_env(),
            observability=ObservabilityConfig.from_env(),
        )

        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration consistency.

        Raises:
            ValueError: If configuration is invalid.
        """
        if self.store_backend == StoreBackend.DATASTORE and not self.datastore.project_id:
            raise ValueError("DATASTORE_PROJECT_ID is required when DSENT_STORE_BACKEND=datastore")
        if self.memory.latency_ms < 0:
            raise ValueError("DSENT_MEMORY_LATENCY_MS must not be negative")
        if self.session.operation_timeout_seconds < 0:
            raise ValueError("DSENT_OPERATION_TIMEOUT_SECONDS must not be negative")

        if self.store_backend == StoreBackend.MEMORY and self.datastore.project_id:
            logger.warning(
                "DATASTORE_PROJECT_ID is set but the memory backend is selected; "
                "data will not be persisted"
            )

    def log_config(self) -> None:
        """Log configuration (redacting secrets)."""
        logger.info(
            "dsent configuration loaded",
            extra={
                "store_backend": self.store_backend.value,
                "datastore_project": self.datastore.project_id
                if self.store_backend == StoreBackend.DATASTORE
                else None,
                "datastore_emulator": self.datastore.emulator_host
                if self.store_backend == StoreBackend.DATASTORE
                else None,
                "namespace": self.session.namespace,
                "operation_timeout": self.session.operation_timeout,
                "log_level": self.observability.log_level,
            },
        )
