# kubeconsole/boot/load_settings.py

import os
import copy
import yaml
import argparse
import logging
from typing import Dict, Any, Optional

_log = logging.getLogger(__name__)

SETTINGS_ENV_VAR = "KUBECONSOLE_SETTINGS"

# Environment variables that override a single settings key.
_ENV_OVERRIDES = {
    "DATABASE_URL": ("database", "url"),
    "INFRA_API_URL": ("infra", "base_url"),
}


def default_settings_path() -> str:
    """
    Resolve the settings file: $KUBECONSOLE_SETTINGS, else settings/agent-settings.yaml
    under the project root.
    """
    explicit = os.getenv(SETTINGS_ENV_VAR)
    if explicit:
        return explicit
    # project_root = repo root (two levels up from kubeconsole/boot/)
    project_root = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", ".."))
    return os.path.join(project_root, "settings", "agent-settings.yaml")


class AppConfigLoader:
    """
    Settings loader.

    - Loads the base YAML from settings/agent-settings.yaml (or an explicit path)
    - Applies environment overrides (DATABASE_URL, INFRA_API_URL)
    - Exposes a copy via get_config()
    - Applies CLI arg overrides via merge_with_args()
    """

    def __init__(self, settings_path: Optional[str] = None) -> None:
        self.settings_path = settings_path or default_settings_path()
        self._config: Dict[str, Any] = {}
        _log.info("Initializing application settings.")
        self._load_from_yaml()
        self._apply_env_overrides()

    # ──────────────────────────────────────────────────────────────────────────
    # Internal loading
    # ──────────────────────────────────────────────────────────────────────────
    def _load_from_yaml(self) -> None:
        """
        Parse the YAML settings file into memory.
        """
        try:
            with open(self.settings_path, "r", encoding="utf-8") as fh:
                self._config = yaml.safe_load(fh) or {}
                _log.info("Settings loaded from %s", self.settings_path)
        except FileNotFoundError:
            _log.warning("Settings file not found at %s. Using empty defaults.", self.settings_path)
            self._config = {}
        except yaml.YAMLError as exc:
            _log.error("Failed to parse settings: %s", exc, exc_info=True)
            self._config = {}

    def _apply_env_overrides(self) -> None:
        for env_name, (section, key) in _ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                _log.info("Settings override from %s.", env_name)
                self._config.setdefault(section, {})[key] = value

    # ──────────────────────────────────────────────────────────────────────────
    # Public API
    # ──────────────────────────────────────────────────────────────────────────
    def get_config(self) -> Dict[str, Any]:
        """
        Return a copy of the loaded settings.
        """
        _log.debug("Providing a copy of the loaded settings.")
        return copy.deepcopy(self._config)

    def merge_with_args(self, args: argparse.Namespace) -> Dict[str, Any]:
        """
        Merge CLI flags into the loaded configuration.
        CLI always takes precedence over YAML and environment.

        Returns a new merged dict (does not mutate the internal cache).
        """
        _log.info("Merging CLI arguments into settings.")
        cfg = self.get_config()

        # Database override
        if getattr(args, "database_url", None) is not None:
            cfg.setdefault("database", {})["url"] = args.database_url

        # Agent overrides (model selection)
        agent_cfg = cfg.setdefault("agent", {})
        if getattr(args, "model", None) is not None:
            agent_cfg["llm_model"] = args.model

        # Server overrides
        server_cfg = cfg.setdefault("server", {})
        if getattr(args, "host", None) is not None:
            server_cfg["host"] = args.host
        if getattr(args, "port", None) is not None:
            server_cfg["port"] = args.port

        # Logging overrides
        log_cfg = cfg.setdefault("logging", {})
        # Verbose flag bumps level to DEBUG
        if getattr(args, "verbose", False) or getattr(args, "debug", False):
            log_cfg["level"] = "DEBUG"

        _log.info("Settings merge complete.")
        return cfg
