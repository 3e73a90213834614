"""Tests for config/loader.py.

Covers:
- _load_yaml() and _deep_merge()
- load_config() source precedence
- get_kb_path()
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from cataloger.config import loader
from cataloger.config.loader import _deep_merge, _load_yaml, get_kb_path, load_config
from cataloger.core.errors import ConfigError, ErrorCode


@pytest.fixture(autouse=True)
def isolated_global_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the global config at a temp file so the user's own config never leaks in."""
    path = tmp_path / "global" / "config.yaml"
    monkeypatch.setattr(loader, "GLOBAL_CONFIG_PATH", path)
    return path


def _write_repo_config(repo_root: Path, text: str) -> None:
    config_dir = repo_root / ".cataloger"
    config_dir.mkdir(parents=True, exist_ok=True)
    (config_dir / "config.yaml").write_text(text)


class TestLoadYaml:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert _load_yaml(tmp_path / "nonexistent.yaml") == {}

    def test_valid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "config.yaml"
        path.write_text("scan:\n  max_workers: 2\n")
        assert _load_yaml(path) == {"scan": {"max_workers": 2}}

    def test_null_document(self, tmp_path: Path) -> None:
        path = tmp_path / "null.yaml"
        path.write_text("null\n")
        assert _load_yaml(path) == {}

    def test_invalid_yaml_raises_config_error(self, tmp_path: Path) -> None:
        path = tmp_path / "invalid.yaml"
        path.write_text("scan:\n  excluded_dirs:\n    - [unclosed")
        with pytest.raises(ConfigError) as exc_info:
            _load_yaml(path)
        assert exc_info.value.code == ErrorCode.CONFIG_PARSE_ERROR


class TestDeepMerge:
    def test_nested_merge(self) -> None:
        base = {"scan": {"max_workers": 4, "timeout_sec": 30}}
        override = {"scan": {"max_workers": 8}}
        assert _deep_merge(base, override) == {"scan": {"max_workers": 8, "timeout_sec": 30}}

    def test_non_dict_override_replaces(self) -> None:
        base: dict[str, Any] = {"a": {"nested": 1}}
        assert _deep_merge(base, {"a": "flat"}) == {"a": "flat"}

    def test_does_not_mutate_base(self) -> None:
        base = {"a": 1}
        _deep_merge(base, {"b": 2})
        assert base == {"a": 1}


class TestLoadConfig:
    def test_defaults(self, tmp_path: Path) -> None:
        config = load_config(tmp_path)
        assert config.logging.level == "INFO"
        assert config.scan.max_workers == 4
        assert config.scan.included_extensions == [".py"]
        assert not config.sampling.enabled
        assert config.sampling.min_confidence == 0.8
        assert config.knowledge_base.retire_after_full_scans == 2

    def test_repo_yaml(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "scan:\n  max_workers: 2\nsampling:\n  enabled: true\n")
        config = load_config(tmp_path)
        assert config.scan.max_workers == 2
        assert config.sampling.enabled

    def test_repo_yaml_overrides_global(self, tmp_path: Path, isolated_global_config: Path) -> None:
        isolated_global_config.parent.mkdir(parents=True)
        isolated_global_config.write_text("scan:\n  max_workers: 6\n  resolver_hop_limit: 3\n")
        _write_repo_config(tmp_path, "scan:\n  max_workers: 2\n")

        config = load_config(tmp_path)
        assert config.scan.max_workers == 2
        assert config.scan.resolver_hop_limit == 3

    def test_env_overrides_yaml(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        _write_repo_config(tmp_path, "scan:\n  max_workers: 2\n")
        monkeypatch.setenv("CATALOGER__SCAN__MAX_WORKERS", "8")
        assert load_config(tmp_path).scan.max_workers == 8

    def test_kwargs_override_everything(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CATALOGER__LOGGING__LEVEL", "ERROR")
        config = load_config(tmp_path, logging={"level": "DEBUG"})
        assert config.logging.level == "DEBUG"

    def test_invalid_value_names_the_field(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "scan:\n  max_workers: 0\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        error = exc_info.value
        assert error.code == ErrorCode.CONFIG_INVALID_VALUE
        assert error.details["field"] == "scan.max_workers"

    def test_invalid_yaml_propagates(self, tmp_path: Path) -> None:
        _write_repo_config(tmp_path, "scan: [unclosed")
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.code == ErrorCode.CONFIG_PARSE_ERROR


class TestGetKbPath:
    def test_default_lives_in_repo(self, tmp_path: Path) -> None:
        assert get_kb_path(tmp_path) == tmp_path / ".cataloger" / "kb.db"

    def test_configured_path(self, tmp_path: Path) -> None:
        target = tmp_path / "shared" / "kb.db"
        config = load_config(tmp_path, knowledge_base={"path": str(target)})
        assert get_kb_path(tmp_path, config) == target
