"""
Existence-based cache for model weights and release tool binaries.

Layout under the cache root:

    <root>/
      model.Q4_K_M.gguf                 # RemoteUrl: final URL path segment
      TheBloke/Mistral-7B-GGUF/
        mistral-7b.Q4_K_M.gguf          # HostedFile: <repository_id>/<file_name>

A file that exists at its cache path is never fetched again; contents are
not verified.
"""

from __future__ import annotations

import logging
from pathlib import Path
from urllib.parse import unquote, urlsplit

from llamabox.artifacts.sources import (
    CachedAsset,
    HostedFile,
    LocalPath,
    ModelSource,
    ReleaseAssetRef,
    RemoteUrl,
)
from llamabox.errors import IoError, NotFoundError, ParseError
from llamabox.fetch.http_client import StreamingDownloader
from llamabox.fetch.releases import ReleaseResolver

logger = logging.getLogger(__name__)

HF_RESOLVE_URL = "https://huggingface.co/{repository_id}/resolve/main/{file_name}"


def _mkdir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise IoError(f"Failed to create directory '{path}': {e}") from e


def url_file_name(url: str) -> str:
    """Return the final path segment of `url`, ignoring query and fragment."""
    name = unquote(urlsplit(url).path.rstrip("/").rsplit("/", 1)[-1])
    if not name:
        raise ParseError(f"Couldn't extract file name from URL '{url}'")
    return name


class ModelCache:
    """Resolves model sources to local files, downloading on a cache miss."""

    def __init__(
        self,
        root: str | Path,
        downloader: StreamingDownloader,
        hosted_url_template: str = HF_RESOLVE_URL,
    ):
        self.root = Path(root)
        self.downloader = downloader
        self.hosted_url_template = hosted_url_template
        if self.root.exists():
            logger.info(f"Using models directory at {self.root.resolve()}")
        else:
            logger.info(f"Creating models directory at {self.root}")
        _mkdir(self.root)

    def resolve(self, source: ModelSource) -> Path:
        """Return a local path for `source`, downloading it if needed."""
        return self.fetch(source).local_path

    def fetch(self, source: ModelSource) -> CachedAsset:
        if isinstance(source, LocalPath):
            return self._local(source)
        if isinstance(source, RemoteUrl):
            return self._remote(source)
        if isinstance(source, HostedFile):
            return self._hosted(source)
        raise TypeError(f"Unsupported model source: {source!r}")

    def cache_path(self, source: RemoteUrl | HostedFile) -> Path:
        if isinstance(source, RemoteUrl):
            return self.root / url_file_name(source.url)
        return self.root / source.repository_id / source.file_name

    def hosted_url(self, source: HostedFile) -> str:
        return self.hosted_url_template.format(
            repository_id=source.repository_id, file_name=source.file_name
        )

    def _local(self, source: LocalPath) -> CachedAsset:
        path = Path(source.path)
        if not path.exists():
            raise NotFoundError(f"File path '{path}' does not exist")
        return CachedAsset(logical_name=path.name, local_path=path, origin=source)

    def _remote(self, source: RemoteUrl) -> CachedAsset:
        path = self.cache_path(source)
        if path.exists():
            logger.info(f"Found {path.name} locally")
            return CachedAsset(logical_name=path.name, local_path=path, origin=source)

        logger.info(f"Downloading {source.url} to {path}")
        self.downloader.download_to(source.url, path)
        return CachedAsset(logical_name=path.name, local_path=path, origin=source, downloaded=True)

    def _hosted(self, source: HostedFile) -> CachedAsset:
        name = f"{source.repository_id}/{source.file_name}"
        path = self.cache_path(source)
        if path.exists():
            logger.info(f"Found {name} locally")
            return CachedAsset(logical_name=name, local_path=path, origin=source)

        logger.info(f"Downloading {name}")
        _mkdir(path.parent)
        self.downloader.download_to(self.hosted_url(source), path)
        return CachedAsset(logical_name=name, local_path=path, origin=source, downloaded=True)


class ReleaseAssetCache:
    """Same resolve-or-download pattern for executables from the latest release."""

    def __init__(
        self,
        resolver: ReleaseResolver,
        downloader: StreamingDownloader,
        repository_id: str,
    ):
        self.resolver = resolver
        self.downloader = downloader
        self.repository_id = repository_id

    def ensure(self, path: str | Path, logical_prefix: str) -> CachedAsset:
        """Return `path` if it exists, else download the matching release asset into it."""
        path = Path(path)
        origin = ReleaseAssetRef(self.repository_id, logical_prefix)
        if path.exists():
            logger.info(f"Using existing {logical_prefix} at {path}")
            return CachedAsset(logical_name=logical_prefix, local_path=path, origin=origin)

        logger.warning(f"{logical_prefix} not found at {path}")
        asset = self.resolver.latest_asset(self.repository_id, logical_prefix)
        logger.info(f"Downloading {asset.name} from {self.repository_id}")
        _mkdir(path.parent)
        self.downloader.download_to(asset.download_url, path, make_executable=True)
        return CachedAsset(logical_name=logical_prefix, local_path=path, origin=origin, downloaded=True)
