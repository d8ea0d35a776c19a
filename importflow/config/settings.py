"""Centralized configuration for the importer.

Every threshold the extraction pipeline relies on (stall windows, worker
detection windows, memory ratios, queue routing sizes) lives here with a
documented default. Configuration is loaded from a YAML file and validated
before any command runs.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml

from importflow.utils.result import ConfigError, Err, Ok, Result

DEFAULT_CONFIG_FILE = "importflow.yaml"
DEFAULT_DATA_DIR = ".importflow"

_MEMORY_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMGT]?)B?\s*$", re.IGNORECASE)
_MEMORY_UNITS = {"": 1, "K": 1024, "M": 1024**2, "G": 1024**3, "T": 1024**4}


def parse_memory_limit(value: Any) -> Optional[int]:
    """
    Convert a memory limit such as "256M" or "1G" into bytes.

    Returns None for "-1" or 0, which mean unlimited.

    Raises:
        ValueError: If the value cannot be parsed
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return int(value) if value > 0 else None

    text = str(value).strip()
    if text in ("-1", "0", ""):
        return None

    match = _MEMORY_PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid memory limit: {value!r}")
    number, unit = match.groups()
    return int(float(number) * _MEMORY_UNITS[unit.upper()])


@dataclass
class ParserConfig:
    """Streaming parser and memory governance settings."""

    batch_size: int = 100
    adaptive_batch_size: bool = False
    memory_limit: str = "256M"
    memory_warning_ratio: float = 0.70
    memory_critical_ratio: float = 0.85
    memory_abort_ratio: float = 0.80
    memory_check_interval: int = 100
    max_errors: int = 1000
    estimate_total: bool = True

    @property
    def memory_limit_bytes(self) -> Optional[int]:
        return parse_memory_limit(self.memory_limit)


@dataclass
class StagingConfig:
    """Staging backend selection."""

    driver: str = "sqlite"
    path: Optional[str] = None


@dataclass
class QueueConfig:
    """Queue backend and routing settings."""

    driver: str = "sync"
    queue: str = "default"
    database: Optional[str] = None
    medium_queue: str = "medium-imports"
    heavy_queue: str = "heavy-imports"
    medium_threshold_mb: float = 10
    heavy_threshold_mb: float = 100
    job_timeout: int = 7200
    job_tries: int = 1
    retry_after: int = 7260
    dispatch_delay: int = 0


@dataclass
class DetectionConfig:
    """Worker presence detection windows and probes."""

    cache_ttl: float = 30
    reservation_window_minutes: float = 5
    failure_window_minutes: float = 5
    activity_window_minutes: float = 10
    backlog_threshold: int = 10
    probe_enabled: bool = False
    probe_timeout: float = 5.0
    probe_interval: float = 0.1
    probe_rate_limit: float = 300
    process_check: bool = False
    worker_command: str = "importflow worker"


@dataclass
class ExtractionConfig:
    """Sync versus async decision and stall detection."""

    sync_threshold_mb: float = 10
    force_sync: bool = False
    sync_when_no_workers: bool = False
    stall_minutes: float = 5
    progress_stall_minutes: float = 2
    startup_grace_seconds: float = 30
    max_dispatch_attempts: int = 3
    failure_lookback_minutes: float = 10
    analysis_sample_rows: int = 1000


@dataclass
class SourcesConfig:
    """Source resolution settings."""

    disks: dict[str, str] = field(default_factory=dict)
    download_dir: Optional[str] = None
    http_timeout: float = 60.0


@dataclass
class RecordsConfig:
    """Import record persistence."""

    path: Optional[str] = None


@dataclass
class RunnerConfig:
    """Outer polling loop limits."""

    poll_interval: float = 2.0
    max_steps: int = 50
    timeout: Optional[float] = None


@dataclass
class LoggingConfig:
    """Logging settings."""

    level: str = "info"
    format: str = "json"


def _section(cls: type, data: Any, name: str) -> Any:
    """Build one sub-configuration, rejecting unknown keys."""
    if data is None:
        return cls()
    if not isinstance(data, dict):
        raise ValueError(f"Section '{name}' must be a mapping")

    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"Unknown keys in '{name}': {', '.join(unknown)}")
    return cls(**data)


@dataclass
class ImporterConfig:
    """
    Complete importer configuration.

    Paths not set explicitly are derived from ``data_dir``.
    """

    data_dir: Path = field(default_factory=lambda: Path(DEFAULT_DATA_DIR))

    parser: ParserConfig = field(default_factory=ParserConfig)
    staging: StagingConfig = field(default_factory=StagingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    sources: SourcesConfig = field(default_factory=SourcesConfig)
    records: RecordsConfig = field(default_factory=RecordsConfig)
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_yaml(cls, path: Path) -> Result["ImporterConfig", ConfigError]:
        """
        Load configuration from a YAML file.

        Args:
            path: Path to YAML configuration file

        Returns:
            Result with loaded config or error
        """
        path = Path(path)

        if not path.exists():
            return Err(ConfigError(
                field="path",
                message=f"Configuration file not found: {path}",
            ))

        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            return Err(ConfigError(
                field="yaml",
                message=f"Failed to parse YAML: {e}",
            ))
        except OSError as e:
            return Err(ConfigError(
                field="file",
                message=f"Failed to read config file: {e}",
            ))

        if not isinstance(data, dict):
            return Err(ConfigError(
                field="yaml",
                message="Top level of the configuration must be a mapping",
            ))

        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Result["ImporterConfig", ConfigError]:
        """
        Create configuration from a dictionary.

        Args:
            data: Configuration dictionary

        Returns:
            Result with loaded config or error
        """
        sections = {
            "parser": ParserConfig,
            "staging": StagingConfig,
            "queue": QueueConfig,
            "detection": DetectionConfig,
            "extraction": ExtractionConfig,
            "sources": SourcesConfig,
            "records": RecordsConfig,
            "runner": RunnerConfig,
            "logging": LoggingConfig,
        }

        unknown = sorted(set(data) - set(sections) - {"data_dir"})
        if unknown:
            return Err(ConfigError(
                field=unknown[0],
                message=f"Unknown configuration section: {', '.join(unknown)}",
            ))

        try:
            built = {
                name: _section(section_cls, data.get(name), name)
                for name, section_cls in sections.items()
            }
        except (TypeError, ValueError) as e:
            return Err(ConfigError(
                field="section",
                message=f"Failed to parse configuration: {e}",
            ))

        data_dir = Path(data.get("data_dir") or DEFAULT_DATA_DIR)
        return Ok(cls(data_dir=data_dir, **built))

    def validate(self) -> Result[None, ConfigError]:
        """
        Validate configuration values.

        Returns:
            Result indicating success or validation error
        """
        if self.parser.batch_size < 1:
            return Err(ConfigError(
                field="parser.batch_size",
                message=f"Must be at least 1, got {self.parser.batch_size}",
            ))

        try:
            self.parser.memory_limit_bytes
        except ValueError as e:
            return Err(ConfigError(field="parser.memory_limit", message=str(e)))

        ratios = [
            ("parser.memory_warning_ratio", self.parser.memory_warning_ratio),
            ("parser.memory_critical_ratio", self.parser.memory_critical_ratio),
            ("parser.memory_abort_ratio", self.parser.memory_abort_ratio),
        ]
        for name, value in ratios:
            if not 0 < value <= 1:
                return Err(ConfigError(
                    field=name,
                    message=f"Must be between 0 and 1, got {value}",
                ))

        if self.parser.memory_warning_ratio > self.parser.memory_critical_ratio:
            return Err(ConfigError(
                field="parser.memory_warning_ratio",
                message="Must not exceed memory_critical_ratio",
            ))

        if self.staging.driver not in ("sqlite", "memory"):
            return Err(ConfigError(
                field="staging.driver",
                message=f"Must be 'sqlite' or 'memory', got '{self.staging.driver}'",
            ))

        if self.queue.job_tries < 1:
            return Err(ConfigError(
                field="queue.job_tries",
                message=f"Must be at least 1, got {self.queue.job_tries}",
            ))

        if self.queue.medium_threshold_mb > self.queue.heavy_threshold_mb:
            return Err(ConfigError(
                field="queue.medium_threshold_mb",
                message="Must not exceed heavy_threshold_mb",
            ))

        for name, value in [
            ("queue.job_timeout", self.queue.job_timeout),
            ("detection.cache_ttl", self.detection.cache_ttl),
            ("detection.probe_timeout", self.detection.probe_timeout),
            ("extraction.stall_minutes", self.extraction.stall_minutes),
            ("extraction.progress_stall_minutes", self.extraction.progress_stall_minutes),
            ("runner.poll_interval", self.runner.poll_interval),
        ]:
            if value < 0:
                return Err(ConfigError(
                    field=name,
                    message=f"Must not be negative, got {value}",
                ))

        if self.extraction.max_dispatch_attempts < 1:
            return Err(ConfigError(
                field="extraction.max_dispatch_attempts",
                message=f"Must be at least 1, got {self.extraction.max_dispatch_attempts}",
            ))

        if self.runner.max_steps < 1:
            return Err(ConfigError(
                field="runner.max_steps",
                message=f"Must be at least 1, got {self.runner.max_steps}",
            ))

        return Ok(None)

    @property
    def records_dir(self) -> Path:
        return Path(self.records.path) if self.records.path else self.data_dir / "records"

    @property
    def staging_dir(self) -> Path:
        return Path(self.staging.path) if self.staging.path else self.data_dir / "staging"

    @property
    def queue_database(self) -> Path:
        return Path(self.queue.database) if self.queue.database else self.data_dir / "queue.sqlite"

    @property
    def download_dir(self) -> Path:
        if self.sources.download_dir:
            return Path(self.sources.download_dir)
        return self.data_dir / "downloads"


def load_config(path: Optional[Path] = None) -> Result[ImporterConfig, ConfigError]:
    """
    Load configuration from the standard location.

    Reads ``path`` (or ``$IMPORTFLOW_CONFIG``, or ./importflow.yaml). A missing
    default file yields the built-in defaults; a missing explicit file is an
    error.

    Args:
        path: Explicit configuration file

    Returns:
        Result with the validated config or error
    """
    explicit = path is not None or "IMPORTFLOW_CONFIG" in os.environ
    if path is None:
        path = Path(os.environ.get("IMPORTFLOW_CONFIG", DEFAULT_CONFIG_FILE))
    path = Path(path)

    if path.exists() or explicit:
        result = ImporterConfig.from_yaml(path)
        if result.is_err():
            return result
        config = result.unwrap()
    else:
        config = ImporterConfig()

    validation_result = config.validate()
    if validation_result.is_err():
        return Err(validation_result.unwrap_err())

    return Ok(config)
