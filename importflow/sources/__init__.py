"""Source resolution for import inputs."""

from importflow.sources.resolver import (
    SourceKind,
    SourceMetadata,
    SourceResolver,
)

__all__ = [
    "SourceKind",
    "SourceMetadata",
    "SourceResolver",
]
