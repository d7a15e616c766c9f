"""Tests for YAML config loading and overrides."""

from pathlib import Path

import pytest
import yaml

from llamabox.config import LlamaboxConfig, apply_overrides, load_config

PROJECT_ROOT = Path(__file__).resolve().parent.parent


def test_defaults():
    cfg = LlamaboxConfig()
    assert cfg.model_dir == Path("models")
    assert cfg.server_path == Path("llamafile-server")
    assert cfg.release_repository == "Mozilla-Ocho/llamafile"
    assert cfg.http_timeout_s is None
    assert cfg.port == 8080


def test_load_config_coerces_types(tmp_path: Path):
    config_path = tmp_path / "llamabox.yaml"
    config_path.write_text(
        yaml.safe_dump({"model_dir": "cache/models", "port": "9000", "http_timeout_s": 30}),
        encoding="utf-8",
    )

    cfg = load_config(config_path)

    assert cfg.model_dir == Path("cache/models")
    assert cfg.port == 9000
    assert cfg.http_timeout_s == 30.0
    assert cfg.output_dir is None


def test_shipped_config_loads():
    cfg = load_config(PROJECT_ROOT / "configs" / "llamabox.yaml")
    assert cfg == LlamaboxConfig()


def test_empty_file_gives_defaults(tmp_path: Path):
    config_path = tmp_path / "empty.yaml"
    config_path.write_text("", encoding="utf-8")
    assert load_config(config_path) == LlamaboxConfig()


def test_unknown_key_rejected(tmp_path: Path):
    config_path = tmp_path / "bad.yaml"
    config_path.write_text("model_dirr: x\n", encoding="utf-8")
    with pytest.raises(ValueError) as exc:
        load_config(config_path)
    assert "model_dirr" in str(exc.value)


def test_non_mapping_rejected(tmp_path: Path):
    config_path = tmp_path / "list.yaml"
    config_path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(config_path)


def test_missing_file(tmp_path: Path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_apply_overrides_skips_none():
    cfg = apply_overrides(LlamaboxConfig(), model_dir="other", server_path=None, output_dir="dist")
    assert cfg.model_dir == Path("other")
    assert cfg.server_path == Path("llamafile-server")
    assert cfg.output_dir == Path("dist")
