"""API key resolution for PageClick model providers."""

from __future__ import annotations

import os
from pathlib import Path

import yaml

from pageclick.config import PageClickConfigError

# Provider-specific environment variables, checked after PAGECLICK_API_KEY
PROVIDER_ENV_VARS = {
    "openai": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


def provider_for_model(model_key: str) -> str:
    """Return the wire-format family for a model key."""
    return "gemini" if model_key.startswith("gemini") else "openai"


def resolve_api_key(provider: str = "openai", project_dir: Path | None = None) -> str:
    """Resolve a provider API key from multiple sources.

    Resolution order (highest priority first):
    1. PAGECLICK_API_KEY environment variable
    2. Provider variable (GROQ_API_KEY / GEMINI_API_KEY)
    3. .env file in current directory (either variable)
    4. Project config (.pageclick/config.yaml)
    5. Global config (~/.pageclick/config.yaml)
    """
    provider_var = PROVIDER_ENV_VARS.get(provider, PROVIDER_ENV_VARS["openai"])

    # 1-2. Environment variables
    for var in ("PAGECLICK_API_KEY", provider_var):
        if key := os.environ.get(var):
            return key

    # 3. .env file
    env_path = Path(".env")
    if env_path.exists():
        for var in ("PAGECLICK_API_KEY", provider_var):
            key = _parse_env_file(env_path, var)
            if key:
                return key

    # 4. Project config
    if project_dir:
        config_path = project_dir / "config.yaml"
        if config_path.exists():
            key = _parse_yaml_key(config_path)
            if key:
                return key

    # 5. Global config
    global_config = Path.home() / ".pageclick" / "config.yaml"
    if global_config.exists():
        key = _parse_yaml_key(global_config)
        if key:
            return key

    raise PageClickConfigError(
        f"{provider_var} not set\n\n"
        "PageClick needs a model provider API key to plan actions.\n\n"
        "To fix:\n"
        f"  export {provider_var}=your-key-here\n"
        "  or add api_key: to .pageclick/config.yaml"
    )


def mask_key(key: str) -> str:
    """Mask an API key for display. Shows first 7 and last 3 chars."""
    if len(key) <= 10:
        return "***"
    return f"{key[:7]}...{key[-3:]}"


def _parse_env_file(path: Path, key_name: str) -> str | None:
    """Parse a .env file for a specific key."""
    try:
        with open(path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if line.startswith("#") or "=" not in line:
                    continue
                k, _, v = line.partition("=")
                if k.strip() == key_name:
                    return v.strip().strip("'\"")
    except OSError:
        pass
    return None


def _parse_yaml_key(path: Path) -> str | None:
    """Parse a YAML config file for an API key."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError):
        return None
    if not isinstance(data, dict):
        return None
    return data.get("api_key")
