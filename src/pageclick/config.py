"""PageClick configuration management."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from pageclick.models import (
    DEFAULT_LOOP_BUDGET,
    DEFAULT_LOOP_BUDGETS,
    HISTORY_WINDOW,
    MAX_AUDIT_ENTRIES,
    MODELS,
    NATIVE_ALLOWED_DIRS,
    NATIVE_MAX_READ_BYTES,
    STUCK_WINDOW,
)


class PageClickConfigError(Exception):
    """Raised when configuration is invalid or missing."""

    pass


@dataclass
class PageClickConfig:
    """Configuration for a PageClick agent session."""

    project_dir: Path = field(default_factory=lambda: Path(".pageclick"))

    # Model
    model: str = MODELS["default"]
    api_base_url: str | None = None
    # repr=False keeps the key out of logs and tracebacks that print the config
    api_key: str = field(default="", repr=False)
    request_timeout: float = 60.0

    # Loop budget
    max_loops: int | None = None
    loop_budgets: list[dict[str, Any]] = field(default_factory=lambda: [dict(b) for b in DEFAULT_LOOP_BUDGETS])
    default_loop_budget: int = DEFAULT_LOOP_BUDGET
    stuck_window: int = STUCK_WINDOW
    history_window: int = HISTORY_WINDOW
    max_consecutive_model_failures: int = 3

    # Audit
    audit_max_entries: int = MAX_AUDIT_ENTRIES
    audit_log_path: Path | None = None

    # Native companion / downloads
    native_allowed_dirs: list[str] = field(default_factory=lambda: list(NATIVE_ALLOWED_DIRS))
    native_max_read_bytes: int = NATIVE_MAX_READ_BYTES
    # "inprocess" or "subprocess" (talks to `pageclick native-host` over stdio)
    native_host: str = "inprocess"
    native_host_command: list[str] | None = None
    native_host_timeout: float = 10.0
    downloads_dir: Path = field(default_factory=lambda: Path("~/Downloads").expanduser())

    # Browser
    headless: bool = False

    # Extra policy rule tables, appended after the built-in ones
    policy: dict[str, Any] = field(default_factory=dict)

    @property
    def resolved_audit_log_path(self) -> Path:
        return self.audit_log_path or self.project_dir / "audit.jsonl"

    @classmethod
    def from_file(cls, config_path: Path) -> PageClickConfig:
        """Load config from a YAML file."""
        if not config_path.exists():
            raise PageClickConfigError(f"Config file not found: {config_path}\n\nTo fix: pageclick config init")
        with open(config_path, encoding="utf-8") as f:
            try:
                data = yaml.safe_load(f) or {}
            except yaml.YAMLError as exc:
                raise PageClickConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
        if not isinstance(data, dict):
            raise PageClickConfigError(f"Config file must contain a mapping: {config_path}")
        return cls._from_dict(data, config_path.parent)

    @classmethod
    def _from_dict(cls, data: dict[str, Any], project_dir: Path) -> PageClickConfig:
        """Create config from a dictionary."""
        config = cls()
        config.project_dir = project_dir

        if "model" in data:
            config.model = str(data["model"])
        if "api_base_url" in data:
            config.api_base_url = str(data["api_base_url"])
        if "api_key" in data:
            config.api_key = str(data["api_key"])
        if "request_timeout" in data:
            config.request_timeout = float(data["request_timeout"])

        if data.get("max_loops") is not None:
            config.max_loops = int(data["max_loops"])
            if config.max_loops < 1:
                raise PageClickConfigError("max_loops must be at least 1")
        if "loop_budgets" in data:
            config.loop_budgets = _validate_loop_budgets(data["loop_budgets"])
        if "default_loop_budget" in data:
            config.default_loop_budget = int(data["default_loop_budget"])
        if "stuck_window" in data:
            config.stuck_window = int(data["stuck_window"])
        if "history_window" in data:
            config.history_window = int(data["history_window"])
        if "max_consecutive_model_failures" in data:
            config.max_consecutive_model_failures = int(data["max_consecutive_model_failures"])

        if "audit_max_entries" in data:
            config.audit_max_entries = int(data["audit_max_entries"])
        if "audit_log_path" in data:
            config.audit_log_path = project_dir / data["audit_log_path"]

        if "native_allowed_dirs" in data:
            dirs = data["native_allowed_dirs"]
            if not isinstance(dirs, list):
                raise PageClickConfigError("native_allowed_dirs must be a list of directories")
            config.native_allowed_dirs = [str(d) for d in dirs]
        if "native_max_read_bytes" in data:
            config.native_max_read_bytes = int(data["native_max_read_bytes"])
        if "native_host" in data:
            config.native_host = str(data["native_host"]).lower()
            if config.native_host not in ("inprocess", "subprocess"):
                raise PageClickConfigError("native_host must be 'inprocess' or 'subprocess'")
        if "native_host_command" in data:
            command = data["native_host_command"]
            if not isinstance(command, list) or not command:
                raise PageClickConfigError("native_host_command must be a non-empty list of arguments")
            config.native_host_command = [str(part) for part in command]
        if "native_host_timeout" in data:
            config.native_host_timeout = float(data["native_host_timeout"])
        if "downloads_dir" in data:
            config.downloads_dir = Path(str(data["downloads_dir"])).expanduser()

        if "headless" in data:
            config.headless = bool(data["headless"])

        if "policy" in data:
            policy = data["policy"] or {}
            if not isinstance(policy, dict):
                raise PageClickConfigError("policy must be a mapping of rule tables")
            config.policy = policy

        return config


def _validate_loop_budgets(raw: Any) -> list[dict[str, Any]]:
    """Check the shape of a configured loop_budgets list."""
    if not isinstance(raw, list) or not raw:
        raise PageClickConfigError("loop_budgets must be a non-empty list")
    budgets: list[dict[str, Any]] = []
    for entry in raw:
        if not isinstance(entry, dict) or "budget" not in entry or "keywords" not in entry:
            raise PageClickConfigError("Each loop_budgets entry needs 'budget' and 'keywords'")
        budgets.append(
            {
                "name": str(entry.get("name", "")),
                "budget": int(entry["budget"]),
                "keywords": [str(k).lower() for k in entry["keywords"]],
            }
        )
    return budgets


def find_project_dir() -> Path:
    """Locate the .pageclick/ project directory by searching upward from cwd."""
    current = Path.cwd()
    for base in [current, *current.parents]:
        candidate = base / ".pageclick"
        if candidate.is_dir():
            return candidate
    return current / ".pageclick"


def load_config(project_dir: Path | None = None) -> PageClickConfig:
    """Load config.yaml from the project dir, or defaults when none exists."""
    project_dir = project_dir or find_project_dir()
    config_path = project_dir / "config.yaml"
    if config_path.is_file():
        return PageClickConfig.from_file(config_path)
    config = PageClickConfig()
    config.project_dir = project_dir
    return config
