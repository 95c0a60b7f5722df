"""
Configuration loader for Couch Remote.
Supports YAML config files with sensible defaults.
"""

import copy
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import netifaces
import yaml

logger = logging.getLogger(__name__)


# Default configuration
DEFAULT_CONFIG = {
    "server": {
        "port": 8080,
        "host": "0.0.0.0",
        "name": "couch-remote",
        "max_clients": 32,
        "allowed_networks": [
            "127.0.0.0/8",
            "10.0.0.0/8",
            "172.16.0.0/12",
            "192.168.0.0/16",
            "::1/128",
        ],
    },
    "monitor": {
        "heartbeat_interval": 15,
        "liveness_interval": 30,
        "liveness_threshold": 300,
        "gc_interval": 30,
        "stale_timeout": 300,
    },
    "limits": {
        "max_sessions": 64,
        "rate_limit": 50,
        "rate_window": 1.0,
    },
    "discovery": {
        "port": 47820,
        "interval": 3.0,
        "negotiation_timeout": 10.0,
        "device_name": "",
        "network_id": "",
        "namespace": "couch-remote",
        "stun_servers": [
            "stun:stun.l.google.com:19302",
            "stun:stun1.l.google.com:19302",
        ],
    },
    "logging": {
        "level": "INFO",
    },
}


def get_config_paths() -> list[Path]:
    """Get list of possible config file locations (in priority order)."""
    paths = []

    # 1. Current directory
    paths.append(Path.cwd() / "config.yaml")

    # 2. XDG config directory
    xdg_config = os.environ.get("XDG_CONFIG_HOME", "")
    if xdg_config:
        paths.append(Path(xdg_config) / "couch-remote" / "config.yaml")

    # 3. ~/.config/couch-remote/
    paths.append(Path.home() / ".config" / "couch-remote" / "config.yaml")

    # 4. ~/.couch-remote.yaml
    paths.append(Path.home() / ".couch-remote.yaml")

    return paths


def deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge two dictionaries."""
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load configuration from file.

    Args:
        config_path: Explicit config file path. If None, searches default locations.

    Returns:
        Configuration dictionary with defaults filled in.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    # Find config file
    if config_path:
        paths = [config_path]
    else:
        paths = get_config_paths()

    # Try each path
    for path in paths:
        if path.exists():
            try:
                with open(path, "r") as f:
                    file_config = yaml.safe_load(f) or {}
                config = deep_merge(config, file_config)
                break
            except (OSError, yaml.YAMLError) as e:
                logger.warning("Failed to load config from %s: %s", path, e)

    return config


def get_local_ip() -> str:
    """
    Get the local network IP address.

    Returns:
        Local IP address string (e.g., "192.168.1.100")
    """
    interfaces = netifaces.interfaces()

    # Priority order for interface names
    priority = ["eth", "enp", "wlan", "wlp", "eno", "ens"]
    ordered = [iface for prefix in priority for iface in interfaces if iface.startswith(prefix)]
    ordered += [iface for iface in interfaces if iface not in ordered and iface != "lo"]

    for iface in ordered:
        try:
            addrs = netifaces.ifaddresses(iface)
        except ValueError:
            continue
        for addr in addrs.get(netifaces.AF_INET, []):
            ip = addr.get("addr", "")
            if ip and not ip.startswith("127."):
                return ip

    # Final fallback
    return "127.0.0.1"


class Config:
    """Configuration wrapper with easy access to settings."""

    def __init__(self, config_path: Optional[Path] = None, overrides: Optional[Dict[str, Any]] = None):
        self._config = load_config(config_path)
        if overrides:
            self._config = deep_merge(self._config, overrides)

        # Resolve "auto" host
        if self._config["server"]["host"] == "auto":
            self._config["server"]["host"] = get_local_ip()

    @property
    def host(self) -> str:
        return self._config["server"]["host"]

    @property
    def port(self) -> int:
        return self._config["server"]["port"]

    @property
    def ws_port(self) -> int:
        """WebSocket relay listens next to the HTTP admin port."""
        return self.port + 1 if self.port else 0

    @property
    def server_name(self) -> str:
        return self._config["server"]["name"]

    @property
    def max_clients(self) -> int:
        return self._config["server"]["max_clients"]

    @property
    def allowed_networks(self) -> List[str]:
        return list(self._config["server"]["allowed_networks"])

    @property
    def heartbeat_interval(self) -> float:
        return self._config["monitor"]["heartbeat_interval"]

    @property
    def liveness_interval(self) -> float:
        return self._config["monitor"]["liveness_interval"]

    @property
    def liveness_threshold(self) -> float:
        return self._config["monitor"]["liveness_threshold"]

    @property
    def gc_interval(self) -> float:
        return self._config["monitor"]["gc_interval"]

    @property
    def stale_timeout(self) -> float:
        return self._config["monitor"]["stale_timeout"]

    @property
    def max_sessions(self) -> int:
        return self._config["limits"]["max_sessions"]

    @property
    def rate_limit(self) -> int:
        return self._config["limits"]["rate_limit"]

    @property
    def rate_window(self) -> float:
        return self._config["limits"]["rate_window"]

    @property
    def discovery_port(self) -> int:
        return self._config["discovery"]["port"]

    @property
    def discovery_interval(self) -> float:
        return self._config["discovery"]["interval"]

    @property
    def negotiation_timeout(self) -> float:
        return self._config["discovery"]["negotiation_timeout"]

    @property
    def device_name(self) -> str:
        return self._config["discovery"]["device_name"]

    @property
    def network_id(self) -> str:
        return self._config["discovery"]["network_id"]

    @property
    def discovery_namespace(self) -> str:
        return self._config["discovery"]["namespace"]

    @property
    def stun_servers(self) -> List[str]:
        return list(self._config["discovery"]["stun_servers"])

    @property
    def log_level(self) -> str:
        return str(self._config["logging"]["level"]).upper()

    def to_dict(self) -> Dict[str, Any]:
        """Return config as dictionary."""
        return copy.deepcopy(self._config)


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get or create the global config instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> Config:
    """Reload configuration from file."""
    global _config
    _config = Config(config_path)
    return _config
