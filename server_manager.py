"""
server_manager.py
=================
Configuration and wiring for the plugin gateway.

Responsibilities:
  - Load config.json (missing or broken files fall back to defaults)
  - Apply environment overrides (CURSEFORGE_API_KEY, PLUGIN_GATEWAY_URL)
  - Build the outbound User-Agent
  - Construct the marketplace adapters, the Polymart link store and the
    local file transfer, and hand them to a PluginGateway
"""

from __future__ import annotations

import copy
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from link_store import LinkStore
from plugin_apis import (
    CurseForgeAPI,
    ExpiringValue,
    HangarAPI,
    ModrinthAPI,
    PluginProvider,
    PolymartAPI,
    SpigotAPI,
)
from plugin_manager import FileTransfer, LocalFileTransfer, PluginGateway

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Any] = {
    "app": {
        "name": "PluginGateway",
        "version": "1.0",
        "url": "http://localhost:5000",
    },
    "paths": {
        "servers_dir": "./servers",
        "data_dir": "./data",
    },
    "providers": {
        "curseforge_api_key": "",
        "cors_proxy": SpigotAPI.DEFAULT_CORS_PROXY,
        "timeout": 10,
        "redirect_probe_timeout": 10,
    },
    "polymart": {
        "pending_link_ttl": 3600,
    },
    "web": {
        "user_header": "X-User-Id",
        "host": "0.0.0.0",
        "port": 5000,
    },
}


# ──────────────────────────────────────────────
#  Result Object
# ──────────────────────────────────────────────

@dataclass
class Result:
    """Unified result object for ServerManager operations."""

    success: bool
    message: str
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def ok(cls, message: str, **details: Any) -> "Result":
        """Create a successful result."""
        return cls(success=True, message=message, details=details)

    @classmethod
    def fail(cls, message: str, error: Optional[str] = None, **details: Any) -> "Result":
        """Create a failed result."""
        return cls(success=False, message=message, error=error, details=details)


def _merge(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ──────────────────────────────────────────────
#  Server Manager
# ──────────────────────────────────────────────

class ServerManager:
    """
    Owns the gateway configuration and the objects built from it.

    Args:
        config_path:   Path to config.json
        file_transfer: Override the collaborator used for installs
    """

    def __init__(
        self,
        config_path: str | Path = "config.json",
        file_transfer: Optional[FileTransfer] = None,
    ) -> None:
        self.config_path = Path(config_path)
        self.config: Dict[str, Any] = {}
        self._load_config()

        paths = self.settings["paths"]
        self.servers_dir = Path(paths["servers_dir"])
        self.data_dir = Path(paths["data_dir"])

        self.link_store = LinkStore(
            self.data_dir / "polymart_links.json",
            pending_ttl=float(self.settings["polymart"]["pending_link_ttl"]),
        )
        self.file_transfer = file_transfer or LocalFileTransfer(self.servers_dir)
        self.gateway = PluginGateway(self._build_clients(), self.file_transfer)

        logger.info(
            "ServerManager initialised.  servers_dir=%s  config=%s",
            self.servers_dir,
            self.config_path,
        )

    # ================================================================
    #  CONFIGURATION
    # ================================================================

    def _load_config(self) -> None:
        """Load config.json into self.config."""
        if self.config_path.exists():
            try:
                with open(self.config_path, "r", encoding="utf-8") as fh:
                    self.config = json.load(fh)
                logger.debug("Config loaded from %s", self.config_path)
            except (OSError, json.JSONDecodeError) as exc:
                logger.error("Failed to load config: %s", exc)
                self.config = {}
        else:
            logger.info("Config file not found, using defaults")
            self.config = {}

    def save_config(self) -> None:
        """Persist self.config back to config.json."""
        try:
            with open(self.config_path, "w", encoding="utf-8") as fh:
                json.dump(self.config, fh, indent=2)
            logger.debug("Config saved to %s", self.config_path)
        except OSError as exc:
            logger.error("Failed to save config: %s", exc)

    @property
    def settings(self) -> Dict[str, Any]:
        """Effective configuration: defaults, then config.json, then environment."""
        settings = _merge(DEFAULT_CONFIG, self.config)
        api_key = os.environ.get("CURSEFORGE_API_KEY")
        if api_key:
            settings["providers"]["curseforge_api_key"] = api_key
        public_url = os.environ.get("PLUGIN_GATEWAY_URL")
        if public_url:
            settings["app"]["url"] = public_url
        return settings

    def update_config(self, key: str, value: Any) -> Result:
        """
        Update a single config key and persist.

        Supports dot-notation, e.g. "providers.timeout" → config["providers"]["timeout"]
        """
        parts = key.split(".")
        target = self.config
        try:
            for part in parts[:-1]:
                target = target.setdefault(part, {})
            target[parts[-1]] = value
        except (AttributeError, TypeError) as exc:
            logger.error("Config update failed: %s", exc)
            return Result.fail("Config update failed", error=str(exc))
        self.save_config()
        logger.info("Config updated: %s", key)
        return Result.ok(f"Config updated: {key}")

    # ================================================================
    #  WIRING
    # ================================================================

    @property
    def public_url(self) -> str:
        return self.settings["app"]["url"].rstrip("/")

    @property
    def user_agent(self) -> str:
        app = self.settings["app"]
        return f"{app['name']}/{app['version']} ({self.public_url})"

    @property
    def user_header(self) -> str:
        return self.settings["web"]["user_header"]

    def _build_clients(self) -> Dict[PluginProvider, Any]:
        providers = self.settings["providers"]
        common = {
            "user_agent": self.user_agent,
            "timeout": float(providers["timeout"]),
        }
        return {
            PluginProvider.CURSEFORGE: CurseForgeAPI(
                api_key=providers["curseforge_api_key"], **common,
            ),
            PluginProvider.HANGAR: HangarAPI(**common),
            PluginProvider.MODRINTH: ModrinthAPI(
                loader_cache=ExpiringValue(ModrinthAPI.LOADER_CACHE_TTL), **common,
            ),
            PluginProvider.POLYMART: PolymartAPI(self.link_store, **common),
            PluginProvider.SPIGOTMC: SpigotAPI(
                cors_proxy=providers["cors_proxy"],
                probe_timeout=float(providers["redirect_probe_timeout"]),
                **common,
            ),
        }

    def polymart_return_url(self, server: str) -> str:
        """Where Polymart sends the browser back to after authorization."""
        return f"{self.public_url}/api/servers/{server}/plugins/polymart/callback"

    @staticmethod
    def plugin_listing_path(server: str, provider: PluginProvider) -> str:
        return f"/server/{server}/minecraft-plugins?provider={provider.value}"
