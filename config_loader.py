"""
Configuration Loader
Loads configuration from config.yaml and environment variables
Environment variables take precedence over config file
"""
import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional, List, Tuple

from constants import (
    DEFAULT_LIMIT, CANDIDATE_MULTIPLIER, SUBSTRING_PLACEHOLDER_SCORE,
    DEFAULT_SNAPSHOT_DIR, DEFAULT_EMBEDDING_PROVIDER, GEMINI_EMBEDDING_MODEL,
    EMBEDDING_TIMEOUT_SECONDS,
)


class Config:
    """Centralized configuration management"""

    def __init__(self, config_file: str = "config.yaml"):
        """
        Initialize configuration

        Args:
            config_file: Path to YAML config file
        """
        self.config_file = Path(config_file)
        self._config = {}
        self._load_config()

    def _load_config(self):
        """Load configuration from YAML file, layered over the defaults"""
        self._config = self._get_defaults()
        if not self.config_file.exists():
            return
        try:
            with open(self.config_file, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            # Imported lazily: the logger itself is configured from this class
            from structured_logger import get_logger
            get_logger().warning("config_load_failed",
                                 config_file=str(self.config_file), error=str(e))
            return
        if not isinstance(loaded, dict):
            return
        for section, values in loaded.items():
            if isinstance(values, dict) and isinstance(self._config.get(section), dict):
                self._config[section].update(values)
            else:
                self._config[section] = values

    def _get_defaults(self) -> Dict:
        """Get default configuration"""
        return {
            'server': {
                'host': '0.0.0.0',
                'port': 8000,
                'env': 'development'
            },
            'cors': {
                'allowed_origins': ['http://localhost:3000', 'http://localhost:8000']
            },
            'corpus': {
                'snapshot_dir': DEFAULT_SNAPSHOT_DIR
            },
            'retrieval': {
                'default_limit': DEFAULT_LIMIT,
                'candidate_multiplier': CANDIDATE_MULTIPLIER,
                'substring_score': SUBSTRING_PLACEHOLDER_SCORE
            },
            'embedding': {
                'provider': DEFAULT_EMBEDDING_PROVIDER,
                'model': GEMINI_EMBEDDING_MODEL,
                'timeout_seconds': EMBEDDING_TIMEOUT_SECONDS,
                'dimension': None
            },
            'analyzer': {
                'entity_rules': None,
                'category_rules': None
            },
            'logging': {
                'level': 'INFO',
                'file': None
            }
        }

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation

        Args:
            key_path: Dot-separated path (e.g., 'server.port')
            default: Default value if not found

        Returns:
            Configuration value or default
        """
        keys = key_path.split('.')
        value = self._config

        for key in keys:
            if isinstance(value, dict):
                value = value.get(key)
                if value is None:
                    return default
            else:
                return default

        return value

    def get_with_env(self, key_path: str, env_var: Optional[str] = None, default: Any = None) -> Any:
        """
        Get configuration value, checking environment variable first

        Args:
            key_path: Dot-separated path in config file
            env_var: Environment variable name (optional)
            default: Default value if not found

        Returns:
            Configuration value (env var takes precedence)
        """
        if env_var and os.getenv(env_var):
            env_value = os.getenv(env_var)
            if env_value.lower() in ('true', 'false'):
                return env_value.lower() == 'true'
            try:
                return int(env_value)
            except ValueError:
                try:
                    return float(env_value)
                except ValueError:
                    return env_value

        return self.get(key_path, default)

    def get_list(self, key_path: str, env_var: Optional[str] = None, default: Optional[List] = None) -> List:
        """
        Get list configuration value

        Args:
            key_path: Dot-separated path
            env_var: Environment variable (comma-separated)
            default: Default list

        Returns:
            List of values
        """
        if default is None:
            default = []

        if env_var and os.getenv(env_var):
            env_value = os.getenv(env_var)
            return [item.strip() for item in env_value.split(',') if item.strip()]

        value = self.get(key_path, default)
        if isinstance(value, list):
            return value
        elif isinstance(value, str):
            return [item.strip() for item in value.split(',') if item.strip()]
        return default

    def get_rules(self, key_path: str) -> Optional[List[Tuple[str, str]]]:
        """
        Get an analyzer rule table written as a list of {pattern, value} mappings

        Returns:
            List of (pattern, value) pairs, or None to keep the built-in table
        """
        value = self.get(key_path)
        if not value:
            return None
        return [(str(item['pattern']), str(item['value'])) for item in value]

    # Convenience properties
    @property
    def server_host(self) -> str:
        return self.get('server.host', '0.0.0.0')

    @property
    def server_port(self) -> int:
        return self.get_with_env('server.port', 'PORT', 8000)

    @property
    def env(self) -> str:
        return self.get_with_env('server.env', 'ENV', 'development')

    @property
    def is_production(self) -> bool:
        return self.env.lower() == 'production'

    @property
    def allowed_origins(self) -> List[str]:
        return self.get_list('cors.allowed_origins', 'ALLOWED_ORIGINS', ['*'])

    @property
    def snapshot_dir(self) -> str:
        return str(self.get_with_env('corpus.snapshot_dir', 'CORPUS_DIR', DEFAULT_SNAPSHOT_DIR))

    @property
    def default_limit(self) -> int:
        return self.get('retrieval.default_limit', DEFAULT_LIMIT)

    @property
    def candidate_multiplier(self) -> int:
        return self.get('retrieval.candidate_multiplier', CANDIDATE_MULTIPLIER)

    @property
    def substring_score(self) -> float:
        return self.get('retrieval.substring_score', SUBSTRING_PLACEHOLDER_SCORE)

    @property
    def embedding_provider(self) -> str:
        return self.get_with_env('embedding.provider', 'EMBEDDING_PROVIDER', DEFAULT_EMBEDDING_PROVIDER)

    @property
    def embedding_model(self) -> str:
        return self.get('embedding.model', GEMINI_EMBEDDING_MODEL)

    @property
    def embedding_timeout(self) -> float:
        return float(self.get_with_env('embedding.timeout_seconds', 'EMBEDDING_TIMEOUT',
                                       EMBEDDING_TIMEOUT_SECONDS))

    @property
    def embedding_dimension(self) -> Optional[int]:
        return self.get('embedding.dimension')

    @property
    def gemini_api_key(self) -> Optional[str]:
        return os.getenv('GEMINI_API_KEY')

    @property
    def log_level(self) -> str:
        return self.get_with_env('logging.level', 'LOG_LEVEL', 'INFO')

    @property
    def log_file(self) -> Optional[str]:
        return self.get('logging.file')

# Global config instance
_config_instance: Optional[Config] = None

def get_config() -> Config:
    """Get global config instance (singleton)"""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance
