"""Unit tests for pageclick.config -- PageClickConfig and related functions."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from pageclick.config import PageClickConfig, PageClickConfigError, find_project_dir, load_config
from pageclick.models import DEFAULT_LOOP_BUDGET, DEFAULT_LOOP_BUDGETS, HISTORY_WINDOW, MODELS, STUCK_WINDOW


def _write(path: Path, data) -> Path:
    path.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
    return path


# ---------------------------------------------------------------------------
# 1. Default values
# ---------------------------------------------------------------------------

class TestPageClickConfigDefaults:
    """PageClickConfig should have sensible defaults for every field."""

    def test_model_defaults(self):
        cfg = PageClickConfig()
        assert cfg.model == MODELS["default"]
        assert cfg.api_base_url is None
        assert cfg.api_key == ""

    def test_loop_defaults(self):
        cfg = PageClickConfig()
        assert cfg.max_loops is None
        assert cfg.default_loop_budget == DEFAULT_LOOP_BUDGET
        assert cfg.stuck_window == STUCK_WINDOW
        assert cfg.history_window == HISTORY_WINDOW
        assert cfg.max_consecutive_model_failures == 3
        assert [b["budget"] for b in cfg.loop_budgets] == [b["budget"] for b in DEFAULT_LOOP_BUDGETS]

    def test_loop_budgets_are_copies(self):
        cfg = PageClickConfig()
        cfg.loop_budgets[0]["budget"] = 1
        assert PageClickConfig().loop_budgets[0]["budget"] != 1

    def test_headless_is_false(self):
        assert PageClickConfig().headless is False

    def test_api_key_is_not_in_repr(self):
        cfg = PageClickConfig(api_key="gsk-secret-value")
        assert "gsk-secret-value" not in repr(cfg)

    def test_audit_path_defaults_to_project_dir(self, tmp_path: Path):
        cfg = PageClickConfig(project_dir=tmp_path)
        assert cfg.resolved_audit_log_path == tmp_path / "audit.jsonl"
        cfg.audit_log_path = tmp_path / "elsewhere.jsonl"
        assert cfg.resolved_audit_log_path == tmp_path / "elsewhere.jsonl"


# ---------------------------------------------------------------------------
# 2. from_file()
# ---------------------------------------------------------------------------

class TestFromFile:
    """Loading config.yaml from disk."""

    def test_fixture_project(self, tmp_project_dir: Path):
        cfg = PageClickConfig.from_file(tmp_project_dir / "config.yaml")
        assert cfg.project_dir == tmp_project_dir
        assert cfg.model == "llama-4-scout"
        assert cfg.headless is True
        assert cfg.max_loops == 12
        assert cfg.stuck_window == 4

    def test_all_fields(self, tmp_path: Path):
        path = _write(
            tmp_path / "config.yaml",
            {
                "model": "gemini-3-pro",
                "api_base_url": "http://localhost:8080/v1",
                "request_timeout": 15,
                "default_loop_budget": 30,
                "history_window": 5,
                "max_consecutive_model_failures": 2,
                "audit_max_entries": 50,
                "audit_log_path": "logs/audit.jsonl",
                "native_allowed_dirs": ["~/Projects"],
                "native_max_read_bytes": 4096,
                "native_host": "Subprocess",
                "native_host_command": ["pageclick", "native-host"],
                "native_host_timeout": 5,
                "policy": {"blocked_urls": ["intranet\\.corp"]},
            },
        )
        cfg = PageClickConfig.from_file(path)
        assert cfg.model == "gemini-3-pro"
        assert cfg.api_base_url == "http://localhost:8080/v1"
        assert cfg.request_timeout == 15.0
        assert cfg.default_loop_budget == 30
        assert cfg.history_window == 5
        assert cfg.max_consecutive_model_failures == 2
        assert cfg.audit_max_entries == 50
        assert cfg.resolved_audit_log_path == tmp_path / "logs" / "audit.jsonl"
        assert cfg.native_allowed_dirs == ["~/Projects"]
        assert cfg.native_max_read_bytes == 4096
        assert cfg.native_host == "subprocess"
        assert cfg.native_host_command == ["pageclick", "native-host"]
        assert cfg.native_host_timeout == 5.0
        assert cfg.policy == {"blocked_urls": ["intranet\\.corp"]}

    def test_loop_budgets_keywords_are_lowercased(self, tmp_path: Path):
        path = _write(
            tmp_path / "config.yaml",
            {"loop_budgets": [{"name": "shop", "budget": 50, "keywords": ["Checkout", "CART"]}]},
        )
        cfg = PageClickConfig.from_file(path)
        assert cfg.loop_budgets == [{"name": "shop", "budget": 50, "keywords": ["checkout", "cart"]}]

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("", encoding="utf-8")
        cfg = PageClickConfig.from_file(path)
        assert cfg.model == MODELS["default"]
        assert cfg.project_dir == tmp_path


# ---------------------------------------------------------------------------
# 3. Validation errors
# ---------------------------------------------------------------------------

class TestFromFileErrors:
    """Bad config files raise PageClickConfigError with a useful message."""

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(PageClickConfigError, match="pageclick config init"):
            PageClickConfig.from_file(tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        path.write_text("model: [unclosed", encoding="utf-8")
        with pytest.raises(PageClickConfigError, match="Invalid YAML"):
            PageClickConfig.from_file(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = _write(tmp_path / "config.yaml", ["a", "b"])
        with pytest.raises(PageClickConfigError, match="must contain a mapping"):
            PageClickConfig.from_file(path)

    @pytest.mark.parametrize(
        "data,message",
        [
            ({"max_loops": 0}, "max_loops must be at least 1"),
            ({"loop_budgets": []}, "loop_budgets must be a non-empty list"),
            ({"loop_budgets": [{"budget": 10}]}, "needs 'budget' and 'keywords'"),
            ({"native_allowed_dirs": "~/Documents"}, "native_allowed_dirs must be a list"),
            ({"native_host": "daemon"}, "native_host must be 'inprocess' or 'subprocess'"),
            ({"native_host_command": "pageclick native-host"}, "native_host_command must be a non-empty list"),
            ({"native_host_command": []}, "native_host_command must be a non-empty list"),
            ({"policy": ["block"]}, "policy must be a mapping"),
        ],
    )
    def test_invalid_values(self, tmp_path: Path, data, message: str):
        path = _write(tmp_path / "config.yaml", data)
        with pytest.raises(PageClickConfigError, match=message):
            PageClickConfig.from_file(path)


# ---------------------------------------------------------------------------
# 4. Project discovery
# ---------------------------------------------------------------------------

class TestLoadConfig:
    """find_project_dir() and load_config()."""

    def test_find_project_dir_walks_up(self, tmp_project_dir: Path, monkeypatch: pytest.MonkeyPatch):
        nested = tmp_project_dir.parent / "a" / "b"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)
        assert find_project_dir() == tmp_project_dir

    def test_find_project_dir_falls_back_to_cwd(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.chdir(tmp_path)
        assert find_project_dir() == tmp_path / ".pageclick"

    def test_load_config_reads_file(self, tmp_project_dir: Path):
        assert load_config(tmp_project_dir).max_loops == 12

    def test_load_config_without_file(self, tmp_path: Path):
        cfg = load_config(tmp_path / ".pageclick")
        assert cfg.project_dir == tmp_path / ".pageclick"
        assert cfg.max_loops is None
