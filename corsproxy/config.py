import copy
import json
import os
from typing import Any, Dict, Mapping, Optional

# Environment variable -> (config path, parser)
ENV_OVERRIDES = {
    'HOST': (('host',), str),
    'PORT': (('port',), int),
    'CACHE_TTL': (('cache_ttl',), float),
    'CACHE_MAX_ENTRIES': (('cache_max_entries',), int),
    'RATE_LIMIT_WINDOW_MS': (('rate_limit', 'window_ms'), int),
    'RATE_LIMIT_MAX': (('rate_limit', 'max'), int),
    'LOG_LEVEL': (('logging', 'level'), str),
    'LOG_FILE': (('logging', 'file'), str),
}


class ProxyConfig:
    """Configuration manager for the proxy."""

    def __init__(self, config_path: str = None, environ: Optional[Mapping[str, str]] = None):
        """
        Initialize configuration: defaults, then the JSON file, then the environment.

        Args:
            config_path: Path to JSON configuration file
            environ: Environment to read overrides from, os.environ by default
        """
        self.config_path = config_path
        self.config = self._load_default_config()

        if config_path and os.path.exists(config_path):
            self._load_config_file()

        self._load_environment(os.environ if environ is None else environ)
        self._validate()

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration settings."""
        return {
            "host": "localhost",
            "port": 2208,
            "cache_ttl": 30,
            "cache_max_entries": None,
            "rate_limit": {
                "window_ms": 60000,
                "max": 100
            },
            "logging": {
                "level": "info",
                "file": None
            },
            "cors": True,
            "strip_privacy_headers": False,
            "max_connections": 128,
            "max_body_size": 5 * 1024 * 1024,
            "pool_maxsize": 50,
            "client_timeout": None
        }

    def _load_config_file(self) -> None:
        """Load configuration from JSON file."""
        try:
            with open(self.config_path, 'r') as f:
                file_config = json.load(f)
        except (OSError, ValueError) as e:
            raise ValueError(f"Error loading config file: {e}")
        if not isinstance(file_config, dict):
            raise ValueError("Error loading config file: top level must be an object")
        self.config = _merge(self.config, file_config)

    def _load_environment(self, environ: Mapping[str, str]) -> None:
        """Apply environment variable overrides."""
        for name, (path, parse) in ENV_OVERRIDES.items():
            raw = environ.get(name)
            if raw is None or raw == '':
                continue
            try:
                value = parse(raw)
            except ValueError:
                raise ValueError(f"Invalid value for {name}: {raw!r}")
            section = self.config
            for key in path[:-1]:
                if not isinstance(section.get(key), dict):
                    section[key] = self._load_default_config().get(key, {})
                section = section[key]
            section[path[-1]] = value

    def _validate(self) -> None:
        port = self.get('port')
        if not isinstance(port, int) or not 0 <= port <= 65535:
            raise ValueError(f"Invalid port: {port!r}")
        if not isinstance(self.get('cache_ttl'), (int, float)) or self.get('cache_ttl') < 0:
            raise ValueError(f"Invalid cache_ttl: {self.get('cache_ttl')!r}")
        max_entries = self.get('cache_max_entries')
        if max_entries is not None and (not isinstance(max_entries, int) or max_entries < 1):
            raise ValueError(f"Invalid cache_max_entries: {max_entries!r}")
        rate_limit = self.get('rate_limit')
        if rate_limit:
            for key in ('window_ms', 'max'):
                value = rate_limit.get(key)
                if not isinstance(value, int) or value < 1:
                    raise ValueError(f"Invalid rate_limit.{key}: {value!r}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value by key.

        Args:
            key: Configuration key; dotted keys reach into sections
            default: Returned when the key is missing

        Returns:
            Configuration value
        """
        value = self.config
        for part in key.split('.'):
            if not isinstance(value, dict) or part not in value:
                return default
            value = value[part]
        return value


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged
