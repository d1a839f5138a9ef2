"""
Configuration module for M365 Graph Toolkit.
Defines Graph endpoints, tunable collection settings and credential sources.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


class ToolkitError(Exception):
    """Base class for every error raised by the toolkit."""
    pass


class ConfigurationError(ToolkitError):
    """Raised when required settings are missing or malformed."""
    pass


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"
LOGIN_AUTHORITY = "https://login.microsoftonline.com"
GRAPH_SCOPES = ["https://graph.microsoft.com/.default"]

# Pagination
DEFAULT_PAGE_SIZE = 999           # Maximum items per page ($top)
MAX_PAGES_PER_ENDPOINT = 10000   # Safety cap on pagination loops

# HTTP
REQUEST_TIMEOUT_SECONDS = 60.0
CONNECT_TIMEOUT_SECONDS = 30.0

# Role history
DEFAULT_HISTORY_DAYS = 30

# Usage reports
USAGE_REPORT_PERIODS = ("D7", "D30", "D90", "D180")

# Environment variable names
ENV_TENANT_ID = "M365_TENANT_ID"
ENV_CLIENT_ID = "M365_CLIENT_ID"
ENV_CLIENT_SECRET = "M365_CLIENT_SECRET"
ENV_CERT_PATH = "M365_CERT_PATH"
ENV_CERT_PASSWORD = "M365_CERT_PASSWORD"

AUTH_MODES = ("secret", "certificate", "delegated")


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class AuthConfig:
    """App-only (client secret / certificate) or delegated authentication."""
    mode: str = "secret"              # "secret", "certificate" or "delegated"
    tenant_id: str = ""
    client_id: str = ""
    client_secret: str = ""           # Prompted if empty in secret mode
    certificate_path: str = ""        # Path to base64-encoded PFX
    certificate_password: str = ""
    scopes: list[str] = field(default_factory=lambda: list(GRAPH_SCOPES))

    @property
    def authority(self) -> str:
        return f"{LOGIN_AUTHORITY}/{self.tenant_id}"

    def validate(self):
        if self.mode not in AUTH_MODES:
            raise ConfigurationError(f"Unknown auth mode: {self.mode}")
        if not self.tenant_id or not self.client_id:
            raise ConfigurationError("Both tenant_id and client_id are required.")
        if self.mode == "certificate" and not self.certificate_path:
            raise ConfigurationError("certificate_path is required in certificate mode.")


# ─── Collection Settings ────────────────────────────────────────────────────

@dataclass
class CollectionConfig:
    """Controls for data collection behavior."""
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = MAX_PAGES_PER_ENDPOINT
    history_days: int = DEFAULT_HISTORY_DAYS     # Role history look-back window
    timeout_seconds: float = REQUEST_TIMEOUT_SECONDS
    credential_valid_days: int = 180            # Lifetime of new client secrets


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    formats: list[str] = field(default_factory=lambda: ["table"])

    def __post_init__(self):
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_toolkit_output")

    @property
    def output_dir(self) -> Path:
        return Path(self.base_dir)


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ToolkitConfig:
    """Top-level configuration for the toolkit."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "ToolkitConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}")

        config = cls()
        for section_name in ("auth", "collection", "output"):
            section = getattr(config, section_name)
            for k, v in data.get(section_name, {}).items():
                if hasattr(section, k):
                    setattr(section, k, v)
        config.verbose = data.get("verbose", False)
        return config

    @classmethod
    def from_env(cls, base: Optional["ToolkitConfig"] = None) -> "ToolkitConfig":
        """Fill empty auth settings from M365_* environment variables."""
        config = base or cls()
        auth = config.auth
        auth.tenant_id = auth.tenant_id or os.environ.get(ENV_TENANT_ID, "")
        auth.client_id = auth.client_id or os.environ.get(ENV_CLIENT_ID, "")
        auth.client_secret = auth.client_secret or os.environ.get(ENV_CLIENT_SECRET, "")
        auth.certificate_path = auth.certificate_path or os.environ.get(ENV_CERT_PATH, "")
        auth.certificate_password = (
            auth.certificate_password or os.environ.get(ENV_CERT_PASSWORD, "")
        )
        return config


# ─── Required Graph API Permissions (application) ──────────────────────────

REQUIRED_PERMISSIONS = {
    "Directory.Read.All": "Enumerate users, groups, service principals",
    "RoleManagement.Read.Directory": "Read role definitions, assignments, eligibility and requests",
    "GroupMember.Read.All": "Expand members of role-assignable groups",
    "Application.Read.All": "Read app registrations and their credentials",
    "Application.ReadWrite.OwnedBy": "Add and remove client secrets / certificates",
    "SecurityEvents.Read.All": "Read secure score and control profiles",
    "SecurityIdentitiesSensors.Read.All": "Read Defender for Identity sensors",
    "Team.ReadBasic.All": "List Teams",
    "Agreement.Read.All": "Read terms of use agreements",
    "Reports.Read.All": "Download usage reports",
}
