"""Model references accepted by the build pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Union


@dataclass(frozen=True)
class LocalPath:
    path: Path


@dataclass(frozen=True)
class RemoteUrl:
    url: str


@dataclass(frozen=True)
class HostedFile:
    """A file inside a hosted model repository (e.g. a Hugging Face repo)."""

    repository_id: str
    file_name: str


@dataclass(frozen=True)
class ReleaseAssetRef:
    """A tool binary taken from the latest release of a repository."""

    repository_id: str
    logical_prefix: str


ModelSource = Union[LocalPath, RemoteUrl, HostedFile]


@dataclass(frozen=True)
class CachedAsset:
    """A file known to the cache.

    Attributes:
        logical_name: Human-readable name (file name, repo/file, or asset prefix)
        local_path: Where the file lives
        origin: Where the file came from
        downloaded: True if this call fetched it, False if it was already present
    """

    logical_name: str
    local_path: Path
    origin: ModelSource | ReleaseAssetRef
    downloaded: bool = False
