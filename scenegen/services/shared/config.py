"""Configuration manager for SceneGen.

YAML settings with a .env priority chain:
  1. Global ~/.scenegen/.env  (lowest priority)
  2. Local repo .env          (overrides global)
  3. Environment variables    (highest priority)
"""
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from dotenv import load_dotenv

DEFAULT_SETTINGS = Path(__file__).parent.parent.parent / "config" / "settings.yaml"

# Environment variables that override a YAML key when set.
_ENV_OVERRIDES = {
    "SCENEGEN_COMFYUI_URL": "engine.url",
    "SCENEGEN_LOG_LEVEL": "logging.level",
}

_config_instance: Optional["Config"] = None


class Config:
    """Settings with dot-notation access and env override."""

    def __init__(self, config_path: str):
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        with open(path) as f:
            self._data: dict = yaml.safe_load(f)
        if not isinstance(self._data, dict):
            raise ValueError(f"Config file must be a YAML mapping, got: {type(self._data)}")
        self._load_env()

    # ── private ──────────────────────────────────────────────────────────────

    def _load_env(self) -> None:
        """Load .env files in priority order (global → local)."""
        global_env = Path.home() / ".scenegen" / ".env"
        local_env = Path(__file__).parent.parent.parent.parent / ".env"
        if global_env.exists():
            load_dotenv(global_env, override=False)
        if local_env.exists():
            load_dotenv(local_env, override=True)

    def _lookup(self, key: str) -> tuple[bool, Any]:
        val: Any = self._data
        for k in key.split("."):
            if isinstance(val, dict) and k in val:
                val = val[k]
            else:
                return False, None
        return True, val

    # ── public ───────────────────────────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """Dot-notation access into the YAML tree.

        Example::

            config.get("engine.url")                # "http://127.0.0.1:8188"
            config.get("workflow.steps")            # 30
            config.get("missing.key", "fallback")   # "fallback"

        Keys listed in ``_ENV_OVERRIDES`` return the environment value when set.
        """
        for env_name, env_key in _ENV_OVERRIDES.items():
            if env_key == key and os.environ.get(env_name):
                return os.environ[env_name]
        found, val = self._lookup(key)
        return val if found else default

    def get_path(self, key: str) -> Path:
        """Return a config value as a Path object.

        Raises KeyError if the key does not exist.
        """
        val = self.get(key)
        if val is None:
            raise KeyError(f"Config key not found: {key}")
        return Path(str(val))

    def get_env(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """Return an environment variable value."""
        return os.environ.get(name, default)

    def section(self, key: str) -> dict:
        """Return a mapping section (empty dict if missing or not a mapping)."""
        val = self.get(key)
        return dict(val) if isinstance(val, dict) else {}


# ── module-level singleton ────────────────────────────────────────────────────


def get_config(config_path: Optional[str] = None) -> Config:
    """Return the singleton Config instance.

    On first call ``config_path`` selects the settings file; when omitted the
    packaged ``config/settings.yaml`` is used.  Subsequent calls return the
    existing instance.
    """
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_path or str(DEFAULT_SETTINGS))
    return _config_instance


def reset_config() -> None:
    """Clear the singleton (mainly for testing)."""
    global _config_instance
    _config_instance = None
