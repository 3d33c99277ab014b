#!/usr/bin/env python3
"""
Configuration for nanoreader.

Settings come from the process environment, optionally topped up by a .env
file next to this module and overridden by a YAML secrets file named in
SECRETS_FILE. Everything is resolved once, at import, into the global
``config`` object. Logging is configured here too so that every module gets
the same format through ``get_logger``.
"""

from os import environ, path
from typing import Any, Callable, Dict, Optional, TypeVar
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}

# Secrets files bigger than this are refused
MAX_SECRETS_SIZE = 2 * 1024 * 1024

NumberT = TypeVar("NumberT", int, float)


def _setup_global_logger():
    """Configure the root logger from LOG_LEVEL and LOG_TIMESTAMPS.

    ACCESS_LOG_LEVEL sets the aiohttp request log separately, which defaults
    to WARNING so that the API does not log one line per request.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)

    log_format = '%(name)s - %(levelname)s - %(message)s'
    if environ.get("LOG_TIMESTAMPS", "true").lower() != "false":
        log_format = '%(asctime)s - ' + log_format

    basicConfig(level=level, format=log_format, handlers=[StreamHandler(sys.stdout)], force=True)
    getLogger("aiohttp.access").setLevel(
        LOG_LEVELS.get(environ.get("ACCESS_LOG_LEVEL", "WARNING").upper(), WARNING)
    )
    return getLogger("Nanoreader")


def get_logger(name: str):
    """Return the ``Nanoreader.<name>`` logger."""
    return getLogger(f"Nanoreader.{name}")


logger = _setup_global_logger()


class Config:
    """Resolved nanoreader settings.

    A secrets file is a YAML mapping of variable names to values, e.g.::

        USERNAME: alice
        PASSWORD: correct horse battery staple
    """

    def __init__(self):
        self._load_environment()
        self._resolve()

    def _load_environment(self):
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        secrets_path = environ.get("SECRETS_FILE")
        if secrets_path:
            overrides = self._read_secrets(secrets_path)
            for key, value in overrides.items():
                environ[key] = value
            logger.info(f"Loaded {len(overrides)} settings from secrets file {secrets_path}")

    def _read_secrets(self, file_path: str) -> Dict[str, str]:
        """Return the string settings found in a YAML secrets file.

        An unreadable, oversized or malformed file is logged and ignored.
        """
        try:
            size = path.getsize(file_path)
            if size > MAX_SECRETS_SIZE:
                logger.error(f"Secrets file too large: {size} bytes (limit: {MAX_SECRETS_SIZE} bytes)")
                return {}
            with open(file_path, 'r') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in secrets file {file_path}: {e}")
            return {}
        except OSError as e:
            logger.error(f"Error loading secrets file {file_path}: {e}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Secrets file {file_path} must be a YAML mapping at the top level")
            return {}

        settings = {}
        for key, value in data.items():
            if isinstance(key, str) and value is not None:
                settings[key] = str(value)
            else:
                logger.warning(f"Skipping invalid entry in secrets file: {key!r}")
        return settings

    def _number(self, name: str, default: NumberT, minimum: NumberT, cast: Callable[[str], NumberT]) -> NumberT:
        raw = environ.get(name)
        if raw is None:
            return default
        try:
            value = cast(raw)
        except ValueError:
            logger.warning(f"Invalid {name} value {raw!r}, using default {default}")
            return default
        if value < minimum:
            logger.warning(f"{name} must be at least {minimum}, using default {default}")
            return default
        return value

    def _resolve(self):
        # Storage
        self.DATA_PATH = environ.get("DATA_PATH", path.join(path.expanduser("~"), ".local", "share", "nanoreader"))
        self.DATABASE_PATH = environ.get("DATABASE_PATH", path.join(self.DATA_PATH, "db.sqlite3"))

        # HTTP API
        self.ADDRESS = environ.get("ADDRESS", "0.0.0.0")
        self.PORT = self._number("PORT", 8888, 1, int)

        # Seed user, created by `serve` when both are set
        self.USERNAME: Optional[str] = environ.get("USERNAME") or None
        self.PASSWORD: Optional[str] = environ.get("PASSWORD") or None

        # Refresh
        self.REFRESH_CONCURRENCY = self._number("REFRESH_CONCURRENCY", 32, 1, int)
        self.HTTP_TIMEOUT = self._number("HTTP_TIMEOUT", 20.0, 1.0, float)
        self.HTTP_CONNECT_TIMEOUT = self._number("HTTP_CONNECT_TIMEOUT", 10.0, 0.5, float)
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; nanoreader/1.0)")

        # Search
        self.SEARCH_MAX_TOKEN_LENGTH = self._number("SEARCH_MAX_TOKEN_LENGTH", 24, 1, int)

        # scrypt work factor, a power of two
        self.PASSWORD_HASH_N = self._number("PASSWORD_HASH_N", 2 ** 14, 2, int)
        if self.PASSWORD_HASH_N & (self.PASSWORD_HASH_N - 1):
            logger.warning("PASSWORD_HASH_N must be a power of two, using default 16384")
            self.PASSWORD_HASH_N = 2 ** 14

    def get_config_summary(self) -> Dict[str, Any]:
        """Settings worth logging at startup; credentials are left out."""
        return {
            "database_path": self.DATABASE_PATH,
            "address": self.ADDRESS,
            "port": self.PORT,
            "refresh_concurrency": self.REFRESH_CONCURRENCY,
            "http_timeout": self.HTTP_TIMEOUT,
            "http_connect_timeout": self.HTTP_CONNECT_TIMEOUT,
            "search_max_token_length": self.SEARCH_MAX_TOKEN_LENGTH,
            "seed_user_configured": bool(self.USERNAME and self.PASSWORD),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


# Global configuration instance
config = Config()
