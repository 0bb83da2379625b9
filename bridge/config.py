"""
Bridge - Configuration

Hierarchical configuration for verifier processes: built-in defaults, a
network profile, a YAML or JSON file and BRIDGE_* environment variables,
merged in that order and validated into a BridgeConfig.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from transactions.addresses import NETWORK_HRPS


ENV_PREFIX = 'BRIDGE_'
ENV_NESTING = '__'

CONFIG_SEARCH_PATHS = [
    Path.cwd() / 'bridge.yml',
    Path.cwd() / 'bridge.json',
    Path.home() / '.bridge' / 'config.yml',
    Path.home() / '.bridge' / 'config.json',
]

DEFAULT_CONFIG: Dict[str, Any] = {
    'network': 'regtest',
    'confirmation_threshold': 6,
    'min_relay_fee': 289,
    'dust_value': 1000,
    'bridge_amount_sats': 100_000_000,
    'kickoff_min_amount': 100_000,
    'num_nonces': 10,
    'user_takes_after': 200,
    'operator_takes_after': 5,
    'connector_tree_operator_takes_after': 1,
    'db_path': '~/.bridge/verifier.json',
    'log_level': 'INFO',
    'rpc': {
        'host': 'localhost',
        'port': 18443,
        'username': None,
        'password': None,
        'timeout': 30,
        'max_retries': 3,
    },
}

PROFILES: Dict[str, Dict[str, Any]] = {
    'regtest': {
        'network': 'regtest',
        'confirmation_threshold': 1,
        'rpc': {'port': 18443},
    },
    'testnet': {
        'network': 'testnet',
        'confirmation_threshold': 3,
        'rpc': {'port': 18332},
    },
    'mainnet': {
        'network': 'mainnet',
        'confirmation_threshold': 6,
        'rpc': {'port': 8332},
    },
}


class ConfigError(Exception):
    """Configuration could not be loaded or is invalid."""
    pass


def _check_hex_key(v: str, length: int, name: str) -> str:
    if v.startswith('0x'):
        v = v[2:]
    try:
        raw = bytes.fromhex(v)
    except ValueError:
        raise ValueError(f'{name} must be hex') from None
    if len(raw) != length:
        raise ValueError(f'{name} must be {length} bytes')
    return v.lower()


class RPCSettings(BaseModel):
    """Bitcoin Core connection settings."""

    host: str = 'localhost'
    port: int = Field(18443, gt=0, lt=65536)
    username: Optional[str] = None
    password: Optional[str] = None
    cookie_file: Optional[str] = None
    timeout: int = Field(30, gt=0)
    max_retries: int = Field(3, ge=0)


class BridgeConfig(BaseModel):
    """Validated verifier configuration."""

    network: str = 'regtest'
    secret_key: Optional[str] = Field(None, description="Signer secret key (hex)")
    verifiers_public_keys: List[str] = Field(default_factory=list,
                                             description="x-only verifier keys (hex) in order")
    operator_public_key: Optional[str] = Field(None, description="x-only operator key (hex)")

    confirmation_threshold: int = Field(6, ge=0)
    min_relay_fee: int = Field(289, ge=0)
    dust_value: int = Field(1000, gt=0)
    bridge_amount_sats: int = Field(100_000_000, gt=0)
    kickoff_min_amount: int = Field(100_000, gt=0)
    num_nonces: int = Field(10, ge=4)
    user_takes_after: int = Field(200, ge=0, le=0xffff)
    operator_takes_after: int = Field(5, ge=0, le=0xffff)
    connector_tree_operator_takes_after: int = Field(1, ge=0, le=0xffff)

    db_path: Optional[str] = None
    log_level: str = 'INFO'
    rpc: RPCSettings = Field(default_factory=RPCSettings)

    @field_validator('network')
    @classmethod
    def validate_network(cls, v):
        if v not in NETWORK_HRPS:
            raise ValueError(f'Unknown network: {v}')
        return v

    @field_validator('secret_key')
    @classmethod
    def validate_secret_key(cls, v):
        if v is None:
            return v
        return _check_hex_key(v, 32, 'Secret key')

    @field_validator('operator_public_key')
    @classmethod
    def validate_operator_key(cls, v):
        if v is None:
            return v
        return _check_hex_key(v, 32, 'Operator public key')

    @field_validator('verifiers_public_keys')
    @classmethod
    def validate_verifier_keys(cls, v):
        keys = [_check_hex_key(pk, 32, 'Verifier public key') for pk in v]
        if len(set(keys)) != len(keys):
            raise ValueError('Verifier public keys must be unique')
        return keys

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v):
        level = v.upper()
        if level not in ('DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'):
            raise ValueError(f'Invalid log level: {v}')
        return level

    @model_validator(mode='after')
    def validate_amounts(self):
        if self.bridge_amount_sats <= 2 * (self.min_relay_fee + 330) + self.min_relay_fee + 330:
            raise ValueError('Bridge amount does not cover move and withdrawal fees')
        return self

    @property
    def max_kickoffs(self) -> int:
        """Kickoffs per deposit that fit in the nonce slots."""
        return (self.num_nonces - 2) // 2


class ConfigurationManager:
    """Manages hierarchical configuration with environment variable support."""

    def __init__(self, config_file: Optional[str] = None, profile: Optional[str] = None,
                 environ: Optional[Dict[str, str]] = None):
        """
        Initialize configuration manager.

        Args:
            config_file: Explicit configuration file path
            profile: Network profile to apply (regtest, testnet, mainnet)
            environ: Environment mapping (os.environ if None)
        """
        self.logger = logging.getLogger('bridge.config')
        self.config_file = config_file
        self.profile = profile
        self.environ = os.environ if environ is None else environ
        self._config_cache: Optional[Dict[str, Any]] = None
        self._config_sources: List[str] = []

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from all sources in hierarchical order.

        Returns:
            Merged configuration dictionary
        """
        if self._config_cache is not None:
            return self._config_cache

        configs = [DEFAULT_CONFIG]
        self._config_sources = ["defaults"]

        if self.profile:
            if self.profile not in PROFILES:
                raise ConfigError(f"Unknown profile: {self.profile}")
            configs.append(PROFILES[self.profile])
            self._config_sources.append(f"profile:{self.profile}")
            self.logger.debug(f"Applied profile: {self.profile}")

        if self.config_file:
            configs.append(self._load_config_file(Path(self.config_file)))
            self._config_sources.append(f"file:{self.config_file}")
        else:
            for config_path in CONFIG_SEARCH_PATHS:
                if config_path.exists():
                    configs.append(self._load_config_file(config_path))
                    self._config_sources.append(f"file:{config_path}")
                    self.logger.debug(f"Loaded config from {config_path}")
                    break

        env_config = self._load_environment_variables()
        if env_config:
            configs.append(env_config)
            self._config_sources.append("environment")

        self._config_cache = self._deep_merge(*configs)
        self._expand_paths(self._config_cache)
        return self._config_cache

    def _load_config_file(self, path: Path) -> Dict[str, Any]:
        """Load configuration from a YAML or JSON file."""
        try:
            with open(path, 'r') as f:
                if path.suffix in ('.yml', '.yaml'):
                    data = yaml.safe_load(f)
                elif path.suffix == '.json':
                    data = json.load(f)
                else:
                    raise ConfigError(f"Unknown config file format: {path}")
        except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigError(f"Failed to load config from {path}: {e}") from e

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    def _load_environment_variables(self) -> Dict[str, Any]:
        """
        Load BRIDGE_* variables.

        Double underscores nest: BRIDGE_RPC__HOST -> {'rpc': {'host': ...}}.
        """
        env_config: Dict[str, Any] = {}

        for key, value in self.environ.items():
            if not key.startswith(ENV_PREFIX):
                continue
            parts = key[len(ENV_PREFIX):].lower().split(ENV_NESTING)
            current = env_config
            for part in parts[:-1]:
                current = current.setdefault(part, {})
            current[parts[-1]] = self._parse_env_value(value)

        return env_config

    @staticmethod
    def _parse_env_value(value: str) -> Any:
        """Parse JSON literals (numbers, lists, booleans), else keep the string."""
        try:
            return json.loads(value)
        except ValueError:
            return value

    def _deep_merge(self, *dicts: Dict[str, Any]) -> Dict[str, Any]:
        """Deep merge multiple dictionaries."""
        result: Dict[str, Any] = {}

        for dictionary in dicts:
            for key, value in dictionary.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = self._deep_merge(result[key], value)
                elif isinstance(value, dict):
                    result[key] = self._deep_merge(value)
                else:
                    result[key] = value

        return result

    def _expand_paths(self, config: Dict[str, Any]):
        """Expand ~ and environment variables in path values."""
        for key, value in config.items():
            if isinstance(value, dict):
                self._expand_paths(value)
            elif isinstance(value, str) and key.endswith(('_path', '_file')):
                config[key] = os.path.expanduser(os.path.expandvars(value))

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value by dot-notation path.

        Args:
            key_path: Dot-separated path (e.g., 'rpc.host')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        current: Any = self.load()
        for key in key_path.split('.'):
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def get_sources(self) -> List[str]:
        """Get list of configuration sources that were loaded."""
        self.load()
        return self._config_sources

    def build(self) -> BridgeConfig:
        """Validate the merged configuration."""
        try:
            return BridgeConfig.model_validate(self.load())
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def reset(self):
        """Reset configuration cache."""
        self._config_cache = None
        self._config_sources = []


def load_config(config_file: Optional[str] = None, profile: Optional[str] = None,
                environ: Optional[Dict[str, str]] = None) -> BridgeConfig:
    """
    Convenience function to load a validated configuration.

    Args:
        config_file: Optional configuration file path
        profile: Optional network profile
        environ: Optional environment mapping

    Returns:
        BridgeConfig
    """
    return ConfigurationManager(config_file, profile, environ).build()


def configure_logging(level: str = 'INFO') -> None:
    """Apply the configured log level to the bridge loggers."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger('bridge').setLevel(level.upper())
