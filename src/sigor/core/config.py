"""Configuration loading utilities."""

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from zoneinfo import ZoneInfo

from dotenv import load_dotenv


def get_jwt_secret() -> str:
    """Get the shared secret used to verify session tokens.

    Returns an empty string when unset, which puts the HTTP server in
    dev mode (synthetic user, no token checks).
    """
    load_dotenv()
    return os.getenv("SIGOR_JWT_SECRET", "")


@dataclass
class OrgConfig:
    """Organization configuration loaded from config/organization.json.

    All deployment-specific values live here rather than in code, so
    customization requires only editing the JSON file.
    """

    company_name: str
    timezone: str = "UTC"
    cosmos_database: str = ""
    occurrence_code_prefix: str = "OC"
    alert_icon: str = "/favicon.ico"
    push_endpoint: str = ""


def get_project_root() -> Path:
    """Get the project root directory."""
    current = Path(__file__).resolve()
    for parent in current.parents:
        if (parent / "pyproject.toml").exists():
            return parent
    raise RuntimeError("Could not find project root (no pyproject.toml found)")


def load_org_config() -> OrgConfig:
    """Load organization configuration from config file.

    ``SIGOR_CONFIG`` may point at an alternate JSON file.
    """
    override = os.getenv("SIGOR_CONFIG")
    if override:
        config_path = Path(override)
    else:
        config_path = get_project_root() / "config" / "organization.json"

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with config_path.open() as f:
        config_data = json.load(f)

    return OrgConfig(
        company_name=config_data["company_name"],
        timezone=config_data.get("timezone", "UTC"),
        cosmos_database=config_data.get("cosmos_database", ""),
        occurrence_code_prefix=config_data.get("occurrence_code_prefix", "OC"),
        alert_icon=config_data.get("alert_icon", "/favicon.ico"),
        push_endpoint=config_data.get("push_endpoint", ""),
    )


# Cached config instance
_org_config: OrgConfig | None = None


def get_org_config() -> OrgConfig:
    """Get cached organization config.

    Loads config once and caches it for subsequent calls.
    """
    global _org_config
    if _org_config is None:
        _org_config = load_org_config()
    return _org_config


def get_cosmos_database() -> str:
    """Get Cosmos DB database name.

    Reads from ``COSMOS_DATABASE`` env var first, falls back to
    ``organization.json``.
    """
    return os.getenv("COSMOS_DATABASE") or get_org_config().cosmos_database


def get_push_endpoint() -> str:
    """Get the outbound push-notification endpoint URL."""
    return os.getenv("SIGOR_PUSH_ENDPOINT") or get_org_config().push_endpoint


def get_timezone() -> ZoneInfo:
    """Get organization timezone as a ZoneInfo object."""
    return ZoneInfo(get_org_config().timezone)


def local_now() -> datetime:
    """Current time in the organization's timezone."""
    return datetime.now(get_timezone())
