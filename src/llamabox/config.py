"""
Pipeline configuration.

Defaults can be overridden from a YAML file (configs/llamabox.yaml):

    model_dir: models
    server_path: bin/llamafile-server
    zipalign_path: bin/zipalign
    output_dir: dist
    release_repository: Mozilla-Ocho/llamafile
    base_image: debian:bullseye-slim
    port: 8080

Relative paths are kept relative (resolved against the working directory when
used). Environment variables are only consulted by the CLI.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from llamabox.artifacts.model_cache import HF_RESOLVE_URL
from llamabox.build.docker_image import DEFAULT_BASE_IMAGE, DEFAULT_PORT
from llamabox.fetch.releases import DEFAULT_RELEASE_REPOSITORY, GITHUB_API_URL

_PATH_FIELDS = {"model_dir", "server_path", "zipalign_path", "output_dir"}


@dataclass(frozen=True)
class LlamaboxConfig:
    model_dir: Path = Path("models")
    server_path: Path = Path("llamafile-server")
    zipalign_path: Path = Path("zipalign")
    output_dir: Path | None = None
    release_repository: str = DEFAULT_RELEASE_REPOSITORY
    github_api_url: str = GITHUB_API_URL
    hosted_url_template: str = HF_RESOLVE_URL
    http_timeout_s: float | None = None
    docker_base_url: str | None = None
    base_image: str = DEFAULT_BASE_IMAGE
    port: int = DEFAULT_PORT

    @classmethod
    def from_dict(cls, values: dict[str, Any]) -> LlamaboxConfig:
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**_coerce(values))


def _coerce(values: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in values.items():
        if key in _PATH_FIELDS and value is not None:
            value = Path(value)
        elif key == "port" and value is not None:
            value = int(value)
        elif key == "http_timeout_s" and value is not None:
            value = float(value)
        out[key] = value
    return out


def load_config(path: str | Path) -> LlamaboxConfig:
    """Load a YAML config file on top of the defaults."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config not found: {path}")
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Config must be a YAML object (dict).")
    return LlamaboxConfig.from_dict(data)


def apply_overrides(cfg: LlamaboxConfig, **overrides: Any) -> LlamaboxConfig:
    """Return a copy of `cfg` with every non-None override applied."""
    values = {k: v for k, v in overrides.items() if v is not None}
    if not values:
        return cfg
    known = {f.name for f in dataclasses.fields(cfg)}
    unknown = sorted(set(values) - known)
    if unknown:
        raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
    return dataclasses.replace(cfg, **_coerce(values))
