"""Artifact sinks.

A sink receives a complete bundle (name plus ordered files) and stores it.
Retention and versioning belong to the sink; publishing a bundle under an
existing name replaces it.

This module provides:
- DirectorySink: local/shared directory, replaced atomically per bundle
- HttpSink: single tar.gz upload over HTTP PUT
"""

from __future__ import annotations

import gzip
import logging
import shutil
import tarfile
import tempfile
import uuid
from collections.abc import Sequence
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx

if TYPE_CHECKING:
    from crossbuild.config import Settings

logger = logging.getLogger(__name__)

# Timeout for bundle uploads (seconds)
UPLOAD_TIMEOUT = 1800

BundleFiles = Sequence[tuple[str, Path]]


class PublishError(Exception):
    """Raised when a bundle cannot be handed to the sink."""

    def __init__(
        self,
        message: str,
        code: str = "publish_error",
        bundle_name: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.bundle_name = bundle_name


class ArtifactSink(Protocol):
    """Destination for published bundles."""

    def upload(self, bundle_name: str, files: BundleFiles) -> str:
        """Store a bundle and return its location."""
        ...


class DirectorySink:
    """Stores bundles as directories under a root directory.

    Files are written into a hidden temporary sibling first and renamed
    into place, so readers never see a half-written bundle.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def upload(self, bundle_name: str, files: BundleFiles) -> str:
        final_dir = self.root / bundle_name
        tmp_dir = self.root / f".{bundle_name}.tmp-{uuid.uuid4().hex[:8]}"
        old_dir: Path | None = None

        try:
            self.root.mkdir(parents=True, exist_ok=True)
            tmp_dir.mkdir()
            for relative_path, source in files:
                dest = tmp_dir / relative_path
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)

            if final_dir.exists():
                old_dir = self.root / f".{bundle_name}.old-{uuid.uuid4().hex[:8]}"
                final_dir.rename(old_dir)
            tmp_dir.rename(final_dir)
        except OSError as e:
            shutil.rmtree(tmp_dir, ignore_errors=True)
            if old_dir is not None and old_dir.exists() and not final_dir.exists():
                old_dir.rename(final_dir)
            raise PublishError(
                f"Failed to write bundle {bundle_name} to {self.root}: {e}",
                code="sink_io_error",
                bundle_name=bundle_name,
            ) from e

        if old_dir is not None:
            shutil.rmtree(old_dir, ignore_errors=True)

        logger.info("Stored bundle %s (%d files) at %s", bundle_name, len(files), final_dir)
        return str(final_dir)


def write_bundle_archive(files: BundleFiles, archive_path: Path, bundle_name: str) -> Path:
    """Write files into a reproducible tar.gz archive.

    Members are stored under ``<bundle_name>/`` in the given order, with
    fixed timestamps and ownership so identical inputs give identical bytes.

    Args:
        files: Ordered (relative_path, source_path) pairs.
        archive_path: Output archive path.
        bundle_name: Top-level directory name inside the archive.

    Returns:
        Path to the written archive.
    """
    with archive_path.open("wb") as raw:
        with gzip.GzipFile(filename="", mode="wb", fileobj=raw, mtime=0) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for relative_path, source in files:
                    info = tar.gettarinfo(str(source), arcname=f"{bundle_name}/{relative_path}")
                    info.mtime = 0
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    info.mode &= 0o755
                    with source.open("rb") as f:
                        tar.addfile(info, f)
    return archive_path


class HttpSink:
    """Uploads each bundle as one tar.gz with HTTP PUT.

    A bundle is sent in a single request, so the remote side either
    receives all of it or nothing.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = UPLOAD_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client = client

    def url_for(self, bundle_name: str) -> str:
        return f"{self.base_url}/{bundle_name}.tar.gz"

    def upload(self, bundle_name: str, files: BundleFiles) -> str:
        url = self.url_for(bundle_name)
        headers = {"Content-Type": "application/gzip"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        with tempfile.TemporaryDirectory(prefix="crossbuild_upload_") as tmp:
            archive = write_bundle_archive(
                files, Path(tmp) / f"{bundle_name}.tar.gz", bundle_name
            )
            content = archive.read_bytes()

        logger.info("Uploading bundle %s (%d bytes) to %s", bundle_name, len(content), url)

        client = self._client or httpx.Client()
        try:
            response = client.put(url, content=content, headers=headers, timeout=self.timeout)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise PublishError(
                f"HTTP error uploading {bundle_name}: "
                f"{e.response.status_code} {e.response.reason_phrase}",
                code="http_error",
                bundle_name=bundle_name,
            ) from e
        except httpx.TimeoutException as e:
            raise PublishError(
                f"Timeout uploading {bundle_name} to {url}",
                code="timeout",
                bundle_name=bundle_name,
            ) from e
        except httpx.RequestError as e:
            raise PublishError(
                f"Request error uploading {bundle_name}: {e}",
                code="request_error",
                bundle_name=bundle_name,
            ) from e
        finally:
            if self._client is None:
                client.close()

        return url


def make_sink(settings: Settings) -> ArtifactSink:
    """Create the sink selected by settings.

    Args:
        settings: Application settings.

    Returns:
        HttpSink when publish_url is set, otherwise DirectorySink(output_dir).
    """
    if settings.publish_url:
        return HttpSink(
            settings.publish_url,
            token=settings.publish_token,
            timeout=settings.publish_timeout,
        )
    return DirectorySink(settings.output_dir)


__all__ = [
    "ArtifactSink",
    "BundleFiles",
    "DirectorySink",
    "HttpSink",
    "PublishError",
    "make_sink",
    "write_bundle_archive",
]
