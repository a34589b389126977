"""Configuration management for the Signal MCP server.

This module handles configuration loading from environment variables and config files,
and provides the factory function that creates the database adapter.
"""

import os
import logging
from typing import Any, Dict, Optional
from urllib.parse import urlparse
import yaml

from database import DatabaseAdapter
from database_sqlite import SQLiteDatabaseAdapter

logger = logging.getLogger(__name__)

MEMORY_DB = ':memory:'
DEFAULT_DB_PATH = os.path.join('~', '.local', 'share', 'signal-mcp', 'signal-mcp.db')

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def parse_database_url(database_url: str) -> str:
    """Turn a DATABASE_URL into a SQLite path.

    Args:
        database_url: sqlite:///path/to/db.db or sqlite://:memory:

    Returns:
        Filesystem path, or ':memory:'

    Raises:
        ValueError: If the URL is not a sqlite URL
    """
    parsed = urlparse(database_url)
    scheme = parsed.scheme.lower()
    if scheme != 'sqlite':
        logger.error(f"Unsupported DATABASE_URL scheme: {scheme}")
        raise ValueError(f"Unsupported database URL scheme: {scheme}")

    if parsed.netloc == MEMORY_DB or parsed.path in ('', '/', '/:memory:', ':memory:'):
        return MEMORY_DB
    # sqlite:///relative.db keeps a single slash, sqlite:////abs.db keeps the root
    path = parsed.path[1:] if parsed.path.startswith('/') else parsed.path
    return path or MEMORY_DB


class AppConfig:
    """Runtime configuration for the server."""

    def __init__(
        self,
        account: str = '',
        signal_cli_path: str = 'signal-cli',
        database_path: str = DEFAULT_DB_PATH,
        history_limit: int = 500,
        notify_direct: bool = True,
        notify_group: bool = True
    ):
        """Initialize configuration.

        Args:
            account: Signal account number in E.164 form (may be empty)
            signal_cli_path: signal-cli executable
            database_path: SQLite file, or ':memory:' for incognito mode
            history_limit: Messages loaded per conversation on startup
            notify_direct: Raise notifications for 1:1 conversations
            notify_group: Raise notifications for group conversations
        """
        self.account = account
        self.signal_cli_path = signal_cli_path
        self.database_path = database_path
        self.history_limit = history_limit
        self.notify_direct = notify_direct
        self.notify_group = notify_group

    @property
    def incognito(self) -> bool:
        return self.database_path == MEMORY_DB

    @classmethod
    def from_environment(cls) -> "AppConfig":
        """Load configuration from environment variables and config files.

        Priority order:
        1. SIGNAL_ACCOUNT, SIGNAL_CLI_PATH, DATABASE_URL and SIGNAL_INCOGNITO
           environment variables (highest priority)
        2. 'signal' section of config.yaml (path overridable with SIGNAL_MCP_CONFIG)
        3. Defaults

        Returns:
            AppConfig instance with loaded configuration

        Raises:
            ValueError: If DATABASE_URL is not a sqlite URL
        """
        settings = cls._load_yaml_section()
        config = cls._from_yaml_config(settings) if settings else cls()

        account = os.getenv("SIGNAL_ACCOUNT")
        if account:
            config.account = account

        cli_path = os.getenv("SIGNAL_CLI_PATH")
        if cli_path:
            config.signal_cli_path = cli_path

        database_url = os.getenv("DATABASE_URL")
        if database_url:
            logger.info("Loading database location from DATABASE_URL environment variable")
            config.database_path = parse_database_url(database_url)

        if _as_bool(os.getenv("SIGNAL_INCOGNITO", "")):
            config.database_path = MEMORY_DB

        return config

    @staticmethod
    def _load_yaml_section() -> Optional[Dict[str, Any]]:
        config_path = os.getenv("SIGNAL_MCP_CONFIG") or os.path.join(os.path.dirname(__file__), "config.yaml")
        if not os.path.exists(config_path):
            return None
        try:
            with open(config_path, 'r') as f:
                config_data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Failed to load {config_path}: {e}. Falling back to defaults.")
            return None

        if isinstance(config_data, dict) and isinstance(config_data.get('signal'), dict):
            logger.info(f"Loading configuration from {config_path}")
            return config_data['signal']
        return None

    @classmethod
    def _from_yaml_config(cls, config_dict: Dict[str, Any]) -> "AppConfig":
        """Create config from the 'signal' section of config.yaml.

        Args:
            config_dict: Dictionary from the config.yaml 'signal' section

        Returns:
            AppConfig instance

        Raises:
            ValueError: If database_url is not a sqlite URL
        """
        config = cls()
        if config_dict.get('account'):
            config.account = str(config_dict['account'])
        if config_dict.get('signal_cli_path'):
            config.signal_cli_path = str(config_dict['signal_cli_path'])
        if config_dict.get('database_url'):
            config.database_path = parse_database_url(str(config_dict['database_url']))
        elif config_dict.get('database_path'):
            config.database_path = str(config_dict['database_path'])
        if config_dict.get('history_limit') is not None:
            try:
                config.history_limit = int(config_dict['history_limit'])
            except (TypeError, ValueError):
                logger.warning(f"Ignoring invalid history_limit: {config_dict['history_limit']!r}")
        if 'notify_direct' in config_dict:
            config.notify_direct = _as_bool(config_dict['notify_direct'])
        if 'notify_group' in config_dict:
            config.notify_group = _as_bool(config_dict['notify_group'])
        if _as_bool(config_dict.get('incognito', False)):
            config.database_path = MEMORY_DB
        return config


def create_database_adapter(config: AppConfig) -> DatabaseAdapter:
    """Create and return the database adapter for the configuration.

    Args:
        config: AppConfig instance

    Returns:
        SQLiteDatabaseAdapter for the configured path

    Raises:
        ValueError: If the adapter cannot be created
    """
    try:
        path = config.database_path
        if path != MEMORY_DB:
            path = os.path.expanduser(path)
            directory = os.path.dirname(path)
            if directory:
                os.makedirs(directory, exist_ok=True)
        logger.info(f"Creating SQLite database adapter ({path})")
        return SQLiteDatabaseAdapter(path)
    except Exception as e:
        logger.error(f"Failed to create database adapter: {e}")
        raise ValueError(f"Could not create database adapter: {e}")
