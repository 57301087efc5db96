"""
Configuration Management for kbdraft

Loads configuration from ~/.kbdraft/config.json and environment variables.
A .env file in the working directory is loaded first.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field
from typing import List
from urllib.parse import urlparse

from dotenv import load_dotenv

from .errors import ConfigurationError

logger = logging.getLogger("kbdraft.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".kbdraft"
CONFIG_PATH = CONFIG_DIR / "config.json"
LOGS_DIR = CONFIG_DIR / "logs"
STATE_PATH = CONFIG_DIR / "state.json"

SOURCE_KINDS = ("gmail", "jira")
LLM_PROVIDERS = ("anthropic", "openai", "google", "auto")


@dataclass
class SourceConfig:
    """Which system is polled for new items"""
    kind: str = "gmail"  # "gmail" or "jira"
    query: str = ""  # empty: the connector's default filter
    max_results: int = 5  # page size of each list request
    seen_ids_limit: int = 0  # 0 keeps every seen id


@dataclass
class GmailConfig:
    """Gmail mailbox (source and notification sender)"""
    access_token: str = ""
    user_id: str = "me"
    base_url: str = "https://gmail.googleapis.com/gmail/v1"
    query: str = "subject:Internal"
    sender_address: str = ""
    overlap_seconds: int = 300


@dataclass
class JiraConfig:
    """Jira tracker (source and/or correlation target)"""
    base_url: str = ""
    email: str = ""
    api_token: str = ""
    trailing_days: int = 5

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.email and self.api_token)


@dataclass
class ConfluenceConfig:
    """Confluence knowledge base"""
    base_url: str = ""
    email: str = ""
    api_key: str = ""
    space_key: str = ""
    draft: bool = True
    label: str = "review-needed"
    title_prefix: str = "Internal Ticket Summary"


@dataclass
class LLMConfig:
    """Summarization backend"""
    provider: str = "auto"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash"


@dataclass
class EnricherConfig:
    """Summary generation limits"""
    enabled: bool = True
    timeout: float = 30.0
    max_tokens: int = 400
    max_input_chars: int = 8000


@dataclass
class NotifyConfig:
    """Review request delivery"""
    enabled: bool = True
    default_recipient: str = ""


@dataclass
class SchedulerConfig:
    """Timer intervals in seconds (drain_interval 0 disables the drain timer)"""
    poll_interval: int = 300
    drain_interval: int = 900


@dataclass
class ServerConfig:
    """Manual control surface"""
    host: str = "0.0.0.0"
    port: int = 3000
    public_url: str = ""

    @property
    def base_url(self) -> str:
        return (self.public_url or f"http://localhost:{self.port}").rstrip("/")


@dataclass
class KbDraftConfig:
    """Main kbdraft configuration"""
    source: SourceConfig = field(default_factory=SourceConfig)
    gmail: GmailConfig = field(default_factory=GmailConfig)
    jira: JiraConfig = field(default_factory=JiraConfig)
    confluence: ConfluenceConfig = field(default_factory=ConfluenceConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    enricher: EnricherConfig = field(default_factory=EnricherConfig)
    notify: NotifyConfig = field(default_factory=NotifyConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    state_path: str = str(STATE_PATH)
    log_level: str = "INFO"


def _bool(value) -> bool:
    """Convert string or bool to boolean."""
    if isinstance(value, bool):
        return value
    return str(value).lower() in ("1", "true", "yes", "on")


def _parse_section(cls, data: dict, name: str):
    """Build a section dataclass from its dict, ignoring unknown keys"""
    section = data.get(name, {}) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Section '{name}' in {CONFIG_PATH} must be an object")
    defaults = cls()
    kwargs = {}
    for key, default in vars(defaults).items():
        if key not in section:
            continue
        value = section[key]
        if isinstance(default, bool):
            value = _bool(value)
        elif isinstance(default, int):
            value = int(value)
        elif isinstance(default, float):
            value = float(value)
        kwargs[key] = value
    return cls(**kwargs)


# env var -> (section, attribute, type)
_ENV_MAP = {
    "KBDRAFT_SOURCE": ("source", "kind", str),
    "KBDRAFT_SOURCE_QUERY": ("source", "query", str),
    "KBDRAFT_MAX_RESULTS": ("source", "max_results", int),
    "KBDRAFT_SEEN_IDS_LIMIT": ("source", "seen_ids_limit", int),
    "GMAIL_ACCESS_TOKEN": ("gmail", "access_token", str),
    "GMAIL_USER_ID": ("gmail", "user_id", str),
    "GMAIL_QUERY": ("gmail", "query", str),
    "GMAIL_SENDER": ("gmail", "sender_address", str),
    "JIRA_BASE_URL": ("jira", "base_url", str),
    "JIRA_EMAIL": ("jira", "email", str),
    "JIRA_API_TOKEN": ("jira", "api_token", str),
    "JIRA_TRAILING_DAYS": ("jira", "trailing_days", int),
    "CONFLUENCE_BASE_URL": ("confluence", "base_url", str),
    "CONFLUENCE_EMAIL": ("confluence", "email", str),
    "CONFLUENCE_API_KEY": ("confluence", "api_key", str),
    "CONFLUENCE_SPACE": ("confluence", "space_key", str),
    "CONFLUENCE_DRAFT": ("confluence", "draft", _bool),
    "CONFLUENCE_LABEL": ("confluence", "label", str),
    "KBDRAFT_LLM_PROVIDER": ("llm", "provider", str),
    "ANTHROPIC_API_KEY": ("llm", "anthropic_api_key", str),
    "ANTHROPIC_MODEL": ("llm", "anthropic_model", str),
    "OPENAI_API_KEY": ("llm", "openai_api_key", str),
    "OPENAI_MODEL": ("llm", "openai_model", str),
    "GOOGLE_API_KEY": ("llm", "google_api_key", str),
    "GEMINI_API_KEY": ("llm", "google_api_key", str),
    "GOOGLE_MODEL": ("llm", "google_model", str),
    "KBDRAFT_ENRICH": ("enricher", "enabled", _bool),
    "KBDRAFT_ENRICH_TIMEOUT": ("enricher", "timeout", float),
    "KBDRAFT_NOTIFY": ("notify", "enabled", _bool),
    "KBDRAFT_DEFAULT_RECIPIENT": ("notify", "default_recipient", str),
    "KBDRAFT_POLL_INTERVAL": ("scheduler", "poll_interval", int),
    "KBDRAFT_DRAIN_INTERVAL": ("scheduler", "drain_interval", int),
    "PORT": ("server", "port", int),
    "KBDRAFT_PUBLIC_URL": ("server", "public_url", str),
}


def load_config() -> KbDraftConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables (.env included)
    2. Config file (~/.kbdraft/config.json)
    3. Default values

    Malformed numeric values raise ConfigurationError.
    """
    load_dotenv()
    config = KbDraftConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)
            if not isinstance(data, dict):
                raise ConfigurationError(
                    f"{CONFIG_PATH} must contain a JSON object, got {type(data).__name__}"
                )

            config.source = _parse_section(SourceConfig, data, "source")
            config.gmail = _parse_section(GmailConfig, data, "gmail")
            config.jira = _parse_section(JiraConfig, data, "jira")
            config.confluence = _parse_section(ConfluenceConfig, data, "confluence")
            config.llm = _parse_section(LLMConfig, data, "llm")
            config.enricher = _parse_section(EnricherConfig, data, "enricher")
            config.notify = _parse_section(NotifyConfig, data, "notify")
            config.scheduler = _parse_section(SchedulerConfig, data, "scheduler")
            config.server = _parse_section(ServerConfig, data, "server")
            config.state_path = data.get("state_path", config.state_path)
            config.log_level = data.get("log_level", config.log_level)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Malformed value in {CONFIG_PATH}: {e}")

    for env_var, (section_name, attr, cast) in _ENV_MAP.items():
        val = os.getenv(env_var)
        if not val:
            continue
        try:
            setattr(getattr(config, section_name), attr, cast(val))
        except ValueError:
            raise ConfigurationError(f"{env_var} has an invalid value: {val!r}")

    if os.getenv("KBDRAFT_STATE_PATH"):
        config.state_path = os.getenv("KBDRAFT_STATE_PATH")
    if os.getenv("KBDRAFT_LOG_LEVEL"):
        config.log_level = os.getenv("KBDRAFT_LOG_LEVEL").upper()

    return config


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def validate_config(config: KbDraftConfig) -> None:
    """Validate required configuration, raising ConfigurationError with every problem found."""
    errors: List[str] = []

    if config.source.kind not in SOURCE_KINDS:
        errors.append(f"source.kind must be one of {SOURCE_KINDS}, got {config.source.kind!r}")
    if config.source.max_results < 1:
        errors.append("source.max_results must be at least 1")

    uses_gmail = config.source.kind == "gmail" or config.notify.enabled
    if uses_gmail and not config.gmail.access_token:
        errors.append("GMAIL_ACCESS_TOKEN is required")

    if config.source.kind == "jira" and not config.jira.is_configured:
        errors.append("JIRA_BASE_URL, JIRA_EMAIL and JIRA_API_TOKEN are required for the jira source")
    if config.jira.base_url and not _is_http_url(config.jira.base_url):
        errors.append(f"JIRA_BASE_URL must be an http(s) URL: {config.jira.base_url}")

    if not config.confluence.base_url:
        errors.append("CONFLUENCE_BASE_URL is required")
    elif not _is_http_url(config.confluence.base_url):
        errors.append(f"CONFLUENCE_BASE_URL must be an http(s) URL: {config.confluence.base_url}")
    if not config.confluence.space_key:
        errors.append("CONFLUENCE_SPACE is required")
    if not (config.confluence.email and config.confluence.api_key):
        errors.append("CONFLUENCE_EMAIL and CONFLUENCE_API_KEY are required")

    if config.llm.provider not in LLM_PROVIDERS:
        errors.append(f"llm.provider must be one of {LLM_PROVIDERS}, got {config.llm.provider!r}")
    if config.enricher.timeout <= 0:
        errors.append("enricher.timeout must be positive")

    if config.scheduler.poll_interval < 1:
        errors.append("scheduler.poll_interval must be at least 1 second")
    if config.scheduler.drain_interval < 0:
        errors.append("scheduler.drain_interval must not be negative")

    if errors:
        raise ConfigurationError("Config errors:\n  " + "\n  ".join(errors))


def ensure_directories() -> None:
    """Ensure required directories exist"""
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)
