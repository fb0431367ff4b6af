#!/usr/bin/env python3
"""
Configuration management for the news ingestion service.

This module centralizes all configuration loading, validation, and management.
It handles environment variables, validation, and provides a clean interface
for accessing configuration values throughout the application.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

def _setup_global_logger():
    """Setup a single global logger for the entire application.

    Environment Variables:
        LOG_LEVEL: Set log level (DEBUG, INFO, WARNING, ERROR) - defaults to INFO
        LOG_TIMESTAMPS: Enable/disable timestamps in logs (true/false) - defaults to true

    The logger outputs to stdout with line buffering for real-time logging.
    All modules should use get_logger() to create module-specific loggers that inherit this configuration.
    """
    environ["PYTHONUNBUFFERED"] = "1"

    level_str = environ.get("LOG_LEVEL", "INFO").upper()
    level_map = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARNING": WARNING,
        "ERROR": ERROR
    }
    level = level_map.get(level_str, INFO)

    show_timestamps = environ.get("LOG_TIMESTAMPS", "true").lower() != "false"

    if show_timestamps:
        log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    else:
        log_format = '%(name)s - %(levelname)s - %(message)s'

    basicConfig(
        level=level,
        format=log_format,
        handlers=[StreamHandler(sys.stdout)],
        force=True  # Force reconfiguration if already configured
    )

    # Third-party chatter stays at WARNING unless LOG_LEVEL is DEBUG
    if level > DEBUG:
        for name in ("aiohttp.access", "openai", "httpx", "azure"):
            getLogger(name).setLevel(WARNING)

    return getLogger("NewsIngest")

def get_logger(name: str):
    """Get a module-specific logger with the unified configuration.

    This function creates a logger with a name in the format "NewsIngest.{name}".

    Args:
        name: The logger name (e.g., "fetcher", "summarizer", "server")

    Returns:
        A logger instance with the unified configuration
    """
    return getLogger(f"NewsIngest.{name}")

logger = _setup_global_logger()

class Config:
    """Configuration manager for the ingestion service.

    This class handles loading and validation of configuration from multiple sources:
    1. Environment variables
    2. .env file (if present)
    3. YAML secrets file (if SECRETS_FILE environment variable is set)
    4. feeds.yaml seed file

    Example secrets.yaml format:
    ```yaml
    LLM_API_KEY: "sk-..."
    INGEST_API_KEY: "a-long-random-token"
    ```
    """

    def __init__(self):
        """Initialize configuration with environment variables and validation."""
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        """Load environment variables from .env file and secrets file if present."""
        dotenv_path = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded environment variables from {dotenv_path}")

        self._load_secrets_file()

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        """Validate and parse a positive integer environment variable."""
        try:
            value = int(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        """Validate and parse a positive float environment variable."""
        try:
            value = float(environ.get(env_var, str(default)))
            if value < min_val:
                logger.warning(f"{env_var} must be at least {min_val}, using default {default}")
                return default
            return value
        except (ValueError, TypeError):
            logger.warning(f"Invalid {env_var} value, using default {default}")
            return default

    def _validate_and_set_config(self):
        """Validate and set all configuration values."""
        base_dir = path.dirname(path.abspath(__file__))

        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "news.db")
        self.SCHEMA_FILE_PATH = environ.get("SCHEMA_FILE_PATH", path.join(base_dir, "schema.sql"))
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._validate_positive_int("SCHEMA_FILE_SIZE_LIMIT_MB", 1, 1)

        # Feed fetching
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; NewsIngest/1.0)")
        self.FETCH_TIMEOUT_SECONDS = self._validate_positive_float("FETCH_TIMEOUT_SECONDS", 10.0, 1.0)
        self.MAX_REDIRECTS = self._validate_positive_int("MAX_REDIRECTS", 5, 0)
        self.MAX_ITEMS_PER_FEED = self._validate_positive_int("MAX_ITEMS_PER_FEED", 5, 1)
        self.MAX_FEED_BYTES = self._validate_positive_int("MAX_FEED_BYTES", 5 * 1024 * 1024, 1024)

        # Summarization
        self.SUMMARY_INPUT_CHARS = self._validate_positive_int("SUMMARY_INPUT_CHARS", 1000, 100)
        self.SUMMARY_MAX_CHARS = self._validate_positive_int("SUMMARY_MAX_CHARS", 200, 20)
        self.MAX_TAGS = self._validate_positive_int("MAX_TAGS", 2, 1)
        self.DEFAULT_TAG = environ.get("DEFAULT_TAG", "Tech")

        # OpenAI-compatible language model endpoint (DeepSeek by default)
        self.LLM_BASE_URL = environ.get("LLM_BASE_URL", "https://api.deepseek.com").strip().rstrip("/")
        self.LLM_API_KEY = environ.get("LLM_API_KEY") or environ.get("DEEPSEEK_API_KEY")
        self.LLM_MODEL = environ.get("LLM_MODEL", "deepseek-chat")
        self.LLM_TIMEOUT_SECONDS = self._validate_positive_float("LLM_TIMEOUT_SECONDS", 30.0, 1.0)

        # Ingestion trigger endpoint
        self.INGEST_API_KEY = environ.get("INGEST_API_KEY") or None
        self.INGEST_RATE_WINDOW_SECONDS = self._validate_positive_int("INGEST_RATE_WINDOW_SECONDS", 60, 1)
        self.INGEST_RATE_MAX_REQUESTS = self._validate_positive_int("INGEST_RATE_MAX_REQUESTS", 5, 1)
        # Only behind a proxy that overwrites X-Forwarded-For
        self.TRUST_FORWARDED_FOR = environ.get("TRUST_FORWARDED_FOR", "false").lower() == "true"

        # Read endpoints
        self.SERVER_HOST = environ.get("SERVER_HOST", "0.0.0.0")
        self.SERVER_PORT = self._validate_positive_int("SERVER_PORT", 8080, 1)
        self.CACHE_MAX_AGE_SECONDS = self._validate_positive_int("CACHE_MAX_AGE_SECONDS", 300, 0)

        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(base_dir, "feeds.yaml"))
        self.PROMPT_CONFIG_PATH = environ.get("PROMPT_CONFIG_PATH", path.join(base_dir, "prompt.yaml"))

    def _load_secrets_file(self):
        """Load environment variable overrides from a YAML secrets file.

        If SECRETS_FILE is set, every string key of the YAML mapping (top-level, or
        nested under ``environment``) is exported as an environment variable.
        """
        secrets_file_path = environ.get("SECRETS_FILE")
        if not secrets_file_path:
            logger.info("SECRETS_FILE not set; relying on environment/.env for secrets")
            return

        secrets_config = self._safe_read_yaml(secrets_file_path, 2 * 1024 * 1024, 'secrets')
        if not secrets_config:
            return
        if not isinstance(secrets_config, dict):
            logger.warning(f"Secrets file {secrets_file_path} must be a YAML mapping at the top level")
            return

        env_vars = secrets_config.get('environment') if isinstance(secrets_config.get('environment'), dict) else secrets_config

        secrets_loaded = 0
        for key, value in env_vars.items():
            if isinstance(key, str) and value is not None:
                environ[key] = str(value)
                secrets_loaded += 1
                logger.debug(f"Set environment variable {key} from secrets file")
            else:
                logger.warning(f"Skipping invalid environment variable in secrets file: {key}")

        logger.info(f"Successfully loaded {secrets_loaded} environment variables from secrets file {secrets_file_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Safely read a YAML file with consistent validation.

        Args:
            file_path: Path to the YAML file
            max_size: Maximum allowed file size in bytes
            kind: Short label for logging context (e.g. 'secrets', 'feeds')

        Returns:
            Parsed YAML (mapping/list/primitive) or None on failure.
        """
        try:
            if not path.isfile(file_path):
                logger.warning(f"{kind.capitalize()} file not found at {file_path}")
                return None
            if not access(file_path, R_OK):
                logger.error(f"No read permission for {kind} file at {file_path}")
                return None
            size = path.getsize(file_path)
            if size > max_size:
                logger.error(f"{kind.capitalize()} file too large: {size} bytes (limit: {max_size} bytes)")
                return None
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
            if not data:
                logger.warning(f"Empty or invalid YAML in {kind} file {file_path}")
                return None
            return data
        except yaml.YAMLError as e:
            logger.error(f"Error parsing YAML in {kind} file {file_path}: {e}")
        except OSError as e:
            logger.error(f"Error loading {kind} file {file_path}: {e}")
        return None

    def _load_feed_sources(self) -> None:
        """Populate self.FEED_SOURCES from feeds.yaml.

        Expected shape::

            feeds:
              hacker-news:
                url: https://news.ycombinator.com/rss
                active: true

        Any failure results in an empty list; seeding feeds is optional.
        """
        self.FEED_SOURCES: List[Dict[str, Any]] = []
        config_data = self._safe_read_yaml(self.FEEDS_CONFIG_PATH, 5 * 1024 * 1024, 'feeds')
        if not config_data:
            return

        feeds_section = config_data.get('feeds') if isinstance(config_data, dict) else None
        if not isinstance(feeds_section, dict):
            logger.warning(f"No valid feeds found in {self.FEEDS_CONFIG_PATH}")
            return

        for name, feed_cfg in feeds_section.items():
            if isinstance(feed_cfg, str):
                feed_cfg = {'url': feed_cfg}
            if isinstance(feed_cfg, dict) and feed_cfg.get('url'):
                self.FEED_SOURCES.append({
                    'name': str(feed_cfg.get('name') or name),
                    'url': str(feed_cfg['url']).strip(),
                    'is_active': bool(feed_cfg.get('active', True)),
                })
            else:
                logger.warning(f"Skipping invalid feed configuration for '{name}': {feed_cfg}")

        logger.info(f"Loaded {len(self.FEED_SOURCES)} feeds from {self.FEEDS_CONFIG_PATH}")

    def reload_feed_sources(self):
        """Reload feed sources from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "database_path": self.DATABASE_PATH,
            "fetch_timeout_seconds": self.FETCH_TIMEOUT_SECONDS,
            "max_items_per_feed": self.MAX_ITEMS_PER_FEED,
            "llm_base_url": self.LLM_BASE_URL,
            "llm_model": self.LLM_MODEL,
            "llm_timeout_seconds": self.LLM_TIMEOUT_SECONDS,
            "has_llm_api_key": bool(self.LLM_API_KEY),
            "ingest_protected": bool(self.INGEST_API_KEY),
            "ingest_rate_limit": f"{self.INGEST_RATE_MAX_REQUESTS}/{self.INGEST_RATE_WINDOW_SECONDS}s",
            "trust_forwarded_for": self.TRUST_FORWARDED_FOR,
            "seed_feed_count": len(self.FEED_SOURCES),
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
