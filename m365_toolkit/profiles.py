"""
Tenant Profile Manager — Named connection profiles for multi-tenant use.

Profiles are stored in:
    ~/.m365_toolkit/profiles.json

A profile names a tenant, the app registration used against it, and how
that app authenticates. Client secrets and certificate passwords are never
written to disk; they come from the environment or an interactive prompt.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .config import AUTH_MODES, AuthConfig, ConfigurationError

logger = logging.getLogger("m365_toolkit.profiles")


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_CONFIG_DIR = Path.home() / ".m365_toolkit"
_PROFILES_FILE = _CONFIG_DIR / "profiles.json"


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class TenantProfile:
    """A single named tenant profile."""
    name: str                          # Unique short name (e.g. "contoso-prod")
    tenant_id: str                     # Entra tenant ID
    client_id: str                     # App registration client ID
    auth_mode: str = "secret"          # secret | certificate | delegated
    cert_path: str = ""                # PFX file, certificate mode only
    tenant_display_name: str = ""      # Friendly name shown in reports

    def resolve_cert_path(self) -> str:
        """Return absolute cert path, resolving ~ and relative paths."""
        if not self.cert_path:
            return ""
        p = Path(self.cert_path).expanduser()
        if not p.is_absolute():
            p = Path.cwd() / p
        return str(p)

    def apply_to(self, auth: AuthConfig) -> AuthConfig:
        """Copy the profile's connection details onto an AuthConfig."""
        auth.tenant_id = self.tenant_id
        auth.client_id = self.client_id
        auth.mode = self.auth_mode
        if self.cert_path:
            auth.certificate_path = self.resolve_cert_path()
        return auth


@dataclass
class ProfileStore:
    """Manages the collection of tenant profiles on disk."""
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    path: Path = _PROFILES_FILE

    # --- Persistence ---

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """Load profiles from disk. Returns an empty store if the file doesn't exist."""
        path = Path(path) if path else _PROFILES_FILE
        store = cls(path=path)
        if not path.exists():
            return store
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            store.default_profile = data.get("default_profile", "")
            for name, pdata in data.get("profiles", {}).items():
                store.profiles[name] = TenantProfile(
                    name=name,
                    tenant_id=pdata["tenant_id"],
                    client_id=pdata["client_id"],
                    auth_mode=pdata.get("auth_mode", "secret"),
                    cert_path=pdata.get("cert_path", ""),
                    tenant_display_name=pdata.get("tenant_display_name", ""),
                )
        except (json.JSONDecodeError, KeyError) as e:
            logger.warning(f"Failed to parse {path}: {e}")
            return cls(path=path)
        return store

    def save(self) -> None:
        """Persist profiles to disk."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "default_profile": self.default_profile,
            "profiles": {
                name: {
                    "tenant_id": p.tenant_id,
                    "client_id": p.client_id,
                    "auth_mode": p.auth_mode,
                    "cert_path": p.cert_path,
                    "tenant_display_name": p.tenant_display_name,
                }
                for name, p in self.profiles.items()
            },
        }
        self.path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")

    # --- CRUD ---

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        """Add or overwrite a profile."""
        if profile.auth_mode not in AUTH_MODES:
            raise ConfigurationError(
                f"Unknown auth mode {profile.auth_mode!r}; expected one of {', '.join(AUTH_MODES)}"
            )
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        """Remove a profile by name. Returns True if it existed."""
        if name not in self.profiles:
            return False
        del self.profiles[name]
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        """Get a profile by name (case-insensitive)."""
        key = name.lower()
        for pname, profile in self.profiles.items():
            if pname.lower() == key:
                return profile
        return None

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile:
            return self.profiles.get(self.default_profile)
        if self.profiles:
            return next(iter(self.profiles.values()))
        return None

    def set_default(self, name: str) -> bool:
        """Set the default profile. Returns True if the profile exists."""
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name)


def resolve_profile(
    profile_name: Optional[str] = None,
    path: Optional[Path] = None,
) -> Optional[TenantProfile]:
    """
    Look up a tenant profile by name, or the default profile when no name
    is given. Returns None if nothing matches.
    """
    store = ProfileStore.load(path)
    if profile_name:
        return store.get(profile_name)
    return store.get_default()
