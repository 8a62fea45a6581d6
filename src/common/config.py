"""
Configuration management for MPV Remote.
Loads settings from YAML files on top of built-in defaults.
"""

import copy
import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULTS: Dict[str, Any] = {
    'status': {
        'file': '~/.mpv-remote/status.json',
    },
    'ipc': {
        'host': '127.0.0.1',
        'command_port': 5570,
        'event_port': 5571,
        'request_timeout': 1.0,
    },
    'playback': {
        'engine_wait': 0.1,
        'idle_interval': 1.0,
        'load_timeout_local': 5.0,
        'load_timeout_http': 30.0,
    },
    'daemon': {
        'kill_timeout': 1.5,
        'command_timeout': 1.0,
    },
    'engine': {
        'options': {
            'input_default_bindings': True,
            'input_vo_keyboard': True,
            'osc': True,
            'force_window': 'yes',
            'ytdl': True,
        },
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Manages application configuration from YAML files."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize configuration.

        Args:
            config_path: Path to config file. If None, uses default_config.yaml
                         when it exists and the built-in defaults otherwise
        """
        self._explicit = config_path is not None
        if config_path is None:
            # Default to config/default_config.yaml in project root
            project_root = Path(__file__).parent.parent.parent
            config_path = project_root / "config" / "default_config.yaml"

        self.config_path = Path(config_path)
        self._config: Dict[str, Any] = {}
        self.load()

    def load(self) -> None:
        """Load configuration from YAML file."""
        if self.config_path.exists():
            with open(self.config_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        elif self._explicit:
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        else:
            loaded = {}

        self._config = _merge(DEFAULTS, loaded)

        # Apply environment variable overrides
        self._apply_env_overrides()

    def _apply_env_overrides(self) -> None:
        """Override config values from environment variables."""
        if 'MPVR_STATUS_FILE' in os.environ:
            self._config['status']['file'] = os.environ['MPVR_STATUS_FILE']

        if 'MPVR_COMMAND_PORT' in os.environ:
            self._config['ipc']['command_port'] = int(os.environ['MPVR_COMMAND_PORT'])

        if 'MPVR_EVENT_PORT' in os.environ:
            self._config['ipc']['event_port'] = int(os.environ['MPVR_EVENT_PORT'])

        if 'MPVR_LOG_LEVEL' in os.environ:
            self._config['logging']['level'] = os.environ['MPVR_LOG_LEVEL']

        if 'MPVR_LOG_FILE' in os.environ:
            self._config['logging']['file'] = os.environ['MPVR_LOG_FILE']

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'ipc.command_port')
            default: Default value if key not found

        Returns:
            Configuration value or default

        Example:
            >>> config = Config()
            >>> config.get('playback.load_timeout_http')
            30.0
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """
        Set configuration value using dot notation.

        Args:
            key: Configuration key (e.g., 'status.file')
            value: Value to set
        """
        keys = key.split('.')
        config = self._config

        # Navigate to the parent key
        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        # Set the final key
        config[keys[-1]] = value

    def save(self, path: Optional[str] = None) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Path to save to. If None, uses original config_path
        """
        save_path = Path(path) if path else self.config_path

        with open(save_path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False, indent=2)

    @property
    def status_file(self) -> Path:
        """Get the status snapshot file path."""
        return Path(os.path.expanduser(self.get('status.file')))

    @property
    def ipc_host(self) -> str:
        """Get the host the daemon binds and clients connect to."""
        return self.get('ipc.host', '127.0.0.1')

    @property
    def command_port(self) -> int:
        """Get the command (REQ/REP) port."""
        return int(self.get('ipc.command_port'))

    @property
    def event_port(self) -> int:
        """Get the status/reply (PUB/SUB) port."""
        return int(self.get('ipc.event_port'))

    @property
    def engine_options(self) -> Dict[str, Any]:
        """Get preset options applied to every engine context."""
        return dict(self.get('engine.options') or {})

    def __repr__(self) -> str:
        """String representation."""
        return f"Config(path={self.config_path})"

# Global config instance (can be imported by other modules)
_global_config: Optional[Config] = None


def get_config(config_path: Optional[str] = None) -> Config:
    """
    Get the global configuration instance.

    Args:
        config_path: Path to config file (only used on first call)

    Returns:
        Config instance
    """
    global _global_config

    if _global_config is None:
        _global_config = Config(config_path)

    return _global_config
