"""Configuration module for importflow."""

from importflow.config.settings import (
    DetectionConfig,
    ExtractionConfig,
    ImporterConfig,
    LoggingConfig,
    ParserConfig,
    QueueConfig,
    RecordsConfig,
    RunnerConfig,
    SourcesConfig,
    StagingConfig,
    load_config,
    parse_memory_limit,
)

__all__ = [
    "ImporterConfig",
    "ParserConfig",
    "StagingConfig",
    "QueueConfig",
    "DetectionConfig",
    "ExtractionConfig",
    "SourcesConfig",
    "RecordsConfig",
    "RunnerConfig",
    "LoggingConfig",
    "load_config",
    "parse_memory_limit",
]
