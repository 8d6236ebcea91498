"""
Application configuration.

Settings are loaded from environment variables (and an optional .env file).
No defaults for secrets. If a required secret is missing, the app fails to
start with a clear error.

Mailbox accounts live in a YAML file (see config/accounts.example.yaml).
Passwords are never written in that file; each account names the
environment variable that holds its password.

Usage:
    from inboxsync.config import load_settings, load_accounts
    settings = load_settings()
    accounts = load_accounts(settings.accounts_config_path)
"""

import logging
import os
from pathlib import Path
from typing import Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings

from inboxsync.agent.schemas import Category, MailAccount

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # --- Anthropic LLM ---
    anthropic_api_key: str = Field(description="Anthropic API key")
    anthropic_model: str = Field(
        default="claude-sonnet-4-20250514",
        description="Anthropic model to use",
    )
    anthropic_max_tokens_category: int = Field(default=50)
    anthropic_max_tokens_reply: int = Field(default=500)
    llm_timeout_seconds: float = Field(default=15.0)

    # --- Document store (Elasticsearch REST) ---
    elasticsearch_url: str = Field(default="http://localhost:9200")
    elasticsearch_index: str = Field(default="emails")
    store_timeout_seconds: float = Field(default=10.0)

    # --- Mailbox sync ---
    accounts_config_path: str = Field(default="config/accounts.yaml")
    backlog_days: int = Field(default=30)
    backlog_max_messages: int = Field(default=50)
    poll_interval_seconds: float = Field(default=60.0)
    reconnect_delay_seconds: float = Field(default=30.0)
    idle_renew_seconds: float = Field(default=25 * 60)
    idle_check_seconds: float = Field(default=5.0)
    ingest_concurrency: int = Field(default=5)
    actionable_category: Category = Field(
        default=Category.INTERESTED,
        description="Category that triggers downstream notifications",
    )

    # --- Notifications ---
    slack_bot_token: str = Field(default="")
    slack_channel_id: str = Field(default="")
    slack_api_url: str = Field(default="https://slack.com/api/chat.postMessage")
    webhook_url: str = Field(default="")
    notify_timeout_seconds: float = Field(default=10.0)
    notify_max_attempts: int = Field(default=3)
    notify_base_delay_seconds: float = Field(default=1.0)

    # --- Retrieval ---
    vector_db_path: str = Field(default="./vector_db")
    embedding_model: str = Field(default="all-MiniLM-L6-v2")
    retrieval_k: int = Field(default=3)
    meeting_link: str = Field(default="https://cal.com/example")
    product_description: str = Field(default="Our product/service")

    # --- App ---
    app_name: str = Field(default="Inbox Sync")
    app_env: Literal["development", "staging", "production"] = Field(default="development")
    log_level: str = Field(default="info")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }


def load_settings() -> Settings:
    """Build settings once at startup. Raises if a required secret is missing."""
    return Settings()


def load_accounts(yaml_path: str) -> list[MailAccount]:
    """
    Load mailbox accounts from a YAML file.

    Expected shape:

        accounts:
          - id: account1
            email: me@example.com
            host: imap.example.com
            port: 993
            tls: true
            password_env: EMAIL1_PASSWORD

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If an account references an unset password variable.
    """
    path = Path(yaml_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Account config not found: {yaml_path}. "
            f"Create it from the template in config/accounts.example.yaml."
        )

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    entries = data.get("accounts", [])
    if not isinstance(entries, list):
        raise ValueError(f"'accounts' must be a list in {yaml_path}")

    accounts = []
    for entry in entries:
        password_env = entry.get("password_env", "")
        password = os.environ.get(password_env, "") if password_env else entry.get("password", "")
        if not password:
            raise ValueError(
                f"No password for account {entry.get('id')!r}: "
                f"set the {password_env or 'password'} variable"
            )
        accounts.append(
            MailAccount(
                id=entry["id"],
                email=entry["email"],
                host=entry["host"],
                port=int(entry.get("port", 993)),
                username=entry.get("username") or entry["email"],
                password=password,
                use_tls=bool(entry.get("tls", True)),
                verify_certificates=bool(entry.get("verify_certificates", True)),
                folder=entry.get("folder", "INBOX"),
            )
        )

    logger.info(
        "accounts.loaded",
        extra={"action": "accounts.loaded", "account_count": len(accounts)},
    )
    return accounts
