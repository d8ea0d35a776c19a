"""Map an import's (source_type, source_detail) pair onto a readable file."""

from __future__ import annotations

import hashlib
import mimetypes
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import httpx

from importflow.config.settings import SourcesConfig
from importflow.errors import SourceNotFoundError, UnsupportedSourceError
from importflow.utils.logging import get_logger

logger = get_logger("sources.resolver")

DISK_SEPARATOR = "::"


class SourceKind(str, Enum):
    """Supported source types."""

    FILE = "file"
    DISK = "disk"
    URL = "url"


SourceHandler = Callable[[str], Path]


@dataclass
class SourceMetadata:
    """What the pipeline needs to know about a resolved source."""

    path: Path
    size: int
    mime_type: Optional[str]
    readable: bool
    modified: Optional[datetime]

    @property
    def size_mb(self) -> float:
        return self.size / (1024 * 1024)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "size": self.size,
            "mime_type": self.mime_type,
            "readable": self.readable,
            "modified": self.modified.isoformat() if self.modified else None,
        }


class SourceResolver:
    """
    Resolves sources through a handler per ``SourceKind``.

    Extra handlers can be registered for the existing kinds, for example to
    swap the URL downloader in tests.
    """

    def __init__(
        self,
        config: Optional[SourcesConfig] = None,
        download_dir: Optional[Path] = None,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        """
        Initialize the resolver.

        Args:
            config: Disk roots and HTTP settings
            download_dir: Where URL sources are downloaded to
            http_client: Client used for URL sources
        """
        self.config = config or SourcesConfig()
        self.download_dir = Path(download_dir) if download_dir else Path(".importflow/downloads")
        self._http_client = http_client
        self._handlers: dict[SourceKind, SourceHandler] = {
            SourceKind.FILE: self._resolve_file,
            SourceKind.DISK: self._resolve_disk,
            SourceKind.URL: self._resolve_url,
        }

    def register(self, kind: SourceKind, handler: SourceHandler) -> None:
        self._handlers[SourceKind(kind)] = handler

    def resolve(self, source_type: str, source_detail: str) -> Path:
        """
        Resolve a source to a local, readable path.

        Raises:
            UnsupportedSourceError: If no handler exists for the type
            SourceNotFoundError: If the target is missing or unreachable
        """
        try:
            kind = SourceKind(source_type)
        except ValueError:
            raise UnsupportedSourceError(
                source_type, [k.value for k in SourceKind]
            ) from None

        handler = self._handlers.get(kind)
        if handler is None:
            raise UnsupportedSourceError(source_type, [k.value for k in self._handlers])

        if not source_detail:
            raise SourceNotFoundError(str(source_detail), "empty source detail")

        path = handler(source_detail)
        logger.debug("source_resolved", source_type=kind.value, path=str(path))
        return path

    def metadata(self, source_type: str, source_detail: str) -> SourceMetadata:
        path = self.resolve(source_type, source_detail)
        stat = path.stat()
        mime_type, _ = mimetypes.guess_type(path.name)
        return SourceMetadata(
            path=path,
            size=stat.st_size,
            mime_type=mime_type,
            readable=path.is_file(),
            modified=datetime.fromtimestamp(stat.st_mtime, timezone.utc),
        )

    def _resolve_file(self, detail: str) -> Path:
        if detail.startswith(f"{SourceKind.FILE.value}{DISK_SEPARATOR}"):
            detail = detail[len(SourceKind.FILE.value) + len(DISK_SEPARATOR):]
        return self._check_file(Path(detail).expanduser(), detail)

    def _resolve_disk(self, detail: str) -> Path:
        disk, separator, relative = detail.partition(DISK_SEPARATOR)
        if not separator or not relative:
            raise SourceNotFoundError(detail, f"expected '<disk>{DISK_SEPARATOR}<path>'")

        root = self.config.disks.get(disk)
        if root is None:
            raise SourceNotFoundError(detail, f"unknown disk '{disk}'")

        root_path = Path(root).expanduser().resolve()
        candidate = (root_path / relative).resolve()
        if root_path != candidate and root_path not in candidate.parents:
            raise SourceNotFoundError(detail, "path escapes the disk root")
        return self._check_file(candidate, detail)

    def _resolve_url(self, detail: str) -> Path:
        parsed = urlparse(detail)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise SourceNotFoundError(detail, "not an http(s) URL")

        suffix = PurePosixPath(parsed.path).suffix
        digest = hashlib.sha256(detail.encode()).hexdigest()[:16]
        target = self.download_dir / f"{digest}{suffix}"
        if target.exists():
            return target

        self.download_dir.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        client = self._http_client or httpx.Client(
            timeout=self.config.http_timeout,
            follow_redirects=True,
        )
        try:
            with client.stream("GET", detail) as response:
                response.raise_for_status()
                with open(partial, "wb") as f:
                    for block in response.iter_bytes():
                        f.write(block)
            partial.replace(target)
        except httpx.HTTPError as e:
            if partial.exists():
                partial.unlink()
            raise SourceNotFoundError(detail, str(e)) from e
        finally:
            if self._http_client is None:
                client.close()

        logger.info("source_downloaded", url=detail, path=str(target), size=target.stat().st_size)
        return target

    @staticmethod
    def _check_file(path: Path, detail: str) -> Path:
        if not path.exists():
            raise SourceNotFoundError(detail, "file does not exist")
        if not path.is_file():
            raise SourceNotFoundError(detail, "not a regular file")
        return path
