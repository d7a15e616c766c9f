"""Latest-release lookup for the llamafile tool binaries."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from importlib import resources
from typing import Any

import jsonschema

from llamabox.errors import AssetNotFoundError, ParseError
from llamabox.fetch.http_client import StreamingDownloader

GITHUB_API_URL = "https://api.github.com"
DEFAULT_RELEASE_REPOSITORY = "Mozilla-Ocho/llamafile"

# Logical asset names (matched as prefixes of release asset names)
SERVER_ASSET = "llamafile-server"
ZIPALIGN_ASSET = "zipalign"

_SCHEMA_CACHE: dict[str, dict[str, Any]] = {}


def _load_schema(name: str) -> dict[str, Any]:
    if name not in _SCHEMA_CACHE:
        text = resources.files("llamabox.schemas").joinpath(name).read_text(encoding="utf-8")
        _SCHEMA_CACHE[name] = json.loads(text)
    return _SCHEMA_CACHE[name]


@dataclass(frozen=True)
class ReleaseAsset:
    name: str
    download_url: str


@dataclass
class ReleaseManifest:
    """Assets of one release, in the order the API listed them."""

    tag_name: str | None = None
    assets: list[ReleaseAsset] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Any, source: str = "<release>") -> ReleaseManifest:
        """Validate a release document and build a manifest from it.

        Raises:
            ParseError: Document does not have the release shape
        """
        try:
            jsonschema.validate(data, _load_schema("github_release.schema.json"))
        except jsonschema.ValidationError as e:
            raise ParseError(f"Unexpected release document from '{source}': {e.message}") from e
        assets = [
            ReleaseAsset(name=a["name"], download_url=a["browser_download_url"])
            for a in data["assets"]
        ]
        return cls(tag_name=data.get("tag_name"), assets=assets)


def resolve_asset(manifest: ReleaseManifest, logical_prefix: str) -> ReleaseAsset:
    """Return the first asset whose name starts with `logical_prefix`.

    Raises:
        AssetNotFoundError: No asset name matches
    """
    for asset in manifest.assets:
        if asset.name.startswith(logical_prefix):
            return asset
    available = ", ".join(a.name for a in manifest.assets) or "<none>"
    raise AssetNotFoundError(
        f"No release asset matching '{logical_prefix}' (available: {available})"
    )


class ReleaseResolver:
    """Queries the release API; holds no state between calls."""

    def __init__(self, downloader: StreamingDownloader, api_base_url: str = GITHUB_API_URL):
        self.downloader = downloader
        self.api_base_url = api_base_url.rstrip("/")

    def latest_release_url(self, repository_id: str) -> str:
        return f"{self.api_base_url}/repos/{repository_id}/releases/latest"

    def latest_release(self, repository_id: str) -> ReleaseManifest:
        """Fetch and parse the latest release of `repository_id`.

        Raises:
            NetworkError: Request failed
            ParseError: Response is not a release document
        """
        url = self.latest_release_url(repository_id)
        return ReleaseManifest.from_json(self.downloader.get_json(url), source=url)

    resolve_asset = staticmethod(resolve_asset)

    def latest_asset(self, repository_id: str, logical_prefix: str) -> ReleaseAsset:
        return resolve_asset(self.latest_release(repository_id), logical_prefix)
