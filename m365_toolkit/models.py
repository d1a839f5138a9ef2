"""
Record types — Entities read from Graph and the flat rows produced by the
collectors. Principals carry an explicit PrincipalType tag assigned when
the record is built, so no caller ever inspects @odata.type again.
"""

from __future__ import annotations

import fnmatch
import re
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_FRACTION_RE = re.compile(r"\.(\d+)")


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse a Graph ISO 8601 timestamp ("Z" suffix, up to 7 fractional digits)."""
    if not value:
        return None
    text = value.strip().replace("Z", "+00:00")
    # Graph emits 100ns precision; datetime accepts at most microseconds
    text = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def like(value: Optional[str], pattern: str) -> bool:
    """Case-insensitive wildcard match supporting *, ? and [...]."""
    if value is None:
        return False
    return fnmatch.fnmatchcase(value.lower(), pattern.lower())


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, timedelta):
        return str(value)
    if isinstance(value, Record):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


class Record:
    """Mixin giving dataclass rows a JSON-friendly to_dict()."""

    def to_dict(self) -> dict:
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Principals
# ---------------------------------------------------------------------------

class PrincipalType(str, Enum):
    USER = "User"
    GROUP = "Group"
    SERVICE_PRINCIPAL = "ServicePrincipal"
    UNKNOWN = "Unknown"

    @classmethod
    def from_odata_type(cls, odata_type: Optional[str]) -> "PrincipalType":
        """Map '#microsoft.graph.user' style tags onto the enum."""
        name = (odata_type or "").split(".")[-1].lower()
        return {
            "user": cls.USER,
            "group": cls.GROUP,
            "serviceprincipal": cls.SERVICE_PRINCIPAL,
        }.get(name, cls.UNKNOWN)


@dataclass
class Principal(Record):
    """A user, group or service principal."""
    id: str
    display_name: str
    principal_type: PrincipalType
    enabled: Optional[bool] = None
    user_principal_name: Optional[str] = None
    mail: Optional[str] = None
    security_enabled: Optional[bool] = None
    app_id: Optional[str] = None
    service_principal_type: Optional[str] = None

    @classmethod
    def from_user(cls, raw: dict) -> "Principal":
        return cls(
            id=raw["id"],
            display_name=raw.get("displayName") or raw["id"],
            principal_type=PrincipalType.USER,
            enabled=raw.get("accountEnabled"),
            user_principal_name=raw.get("userPrincipalName"),
            mail=raw.get("mail"),
        )

    @classmethod
    def from_group(cls, raw: dict) -> "Principal":
        return cls(
            id=raw["id"],
            display_name=raw.get("displayName") or raw["id"],
            principal_type=PrincipalType.GROUP,
            enabled=True,
            mail=raw.get("mail"),
            security_enabled=raw.get("securityEnabled"),
        )

    @classmethod
    def from_service_principal(cls, raw: dict) -> "Principal":
        return cls(
            id=raw["id"],
            display_name=raw.get("displayName") or raw["id"],
            principal_type=PrincipalType.SERVICE_PRINCIPAL,
            enabled=raw.get("accountEnabled"),
            app_id=raw.get("appId"),
            service_principal_type=raw.get("servicePrincipalType"),
        )

    @classmethod
    def from_directory_object(cls, raw: dict) -> "Principal":
        """Build from a polymorphic directoryObject (e.g. group members)."""
        builders = {
            PrincipalType.USER: cls.from_user,
            PrincipalType.GROUP: cls.from_group,
            PrincipalType.SERVICE_PRINCIPAL: cls.from_service_principal,
        }
        kind = PrincipalType.from_odata_type(raw.get("@odata.type"))
        if kind in builders:
            return builders[kind](raw)
        return cls(
            id=raw["id"],
            display_name=raw.get("displayName") or raw["id"],
            principal_type=PrincipalType.UNKNOWN,
        )

    @classmethod
    def unknown(cls, principal_id: str) -> "Principal":
        """Placeholder for an id absent from every principal source."""
        return cls(
            id=principal_id,
            display_name=f"Unknown ({principal_id})",
            principal_type=PrincipalType.UNKNOWN,
        )

    def matches(self, pattern: str) -> bool:
        """Wildcard match against the UPN or the display name."""
        return like(self.user_principal_name, pattern) or like(self.display_name, pattern)


# ---------------------------------------------------------------------------
# Roles
# ---------------------------------------------------------------------------

@dataclass
class RoleDefinition(Record):
    id: str
    display_name: str
    description: str = ""
    is_built_in: Optional[bool] = None
    is_enabled: Optional[bool] = None
    permission_count: int = 0

    @classmethod
    def from_graph(cls, raw: dict) -> "RoleDefinition":
        permissions = sum(
            len(rp.get("allowedResourceActions") or [])
            for rp in raw.get("rolePermissions") or []
        )
        return cls(
            id=raw["id"],
            display_name=raw.get("displayName") or raw["id"],
            description=raw.get("description") or "",
            is_built_in=raw.get("isBuiltIn"),
            is_enabled=raw.get("isEnabled"),
            permission_count=permissions,
        )

    @classmethod
    def unknown(cls, role_id: str) -> "RoleDefinition":
        return cls(id=role_id, display_name=f"Unknown ({role_id})")


@dataclass
class RoleAssignment(Record):
    """Direct (active) role grant of a principal."""
    id: str
    role_definition_id: str
    principal_id: str
    directory_scope_id: str = "/"
    created: Optional[datetime] = None

    @classmethod
    def from_graph(cls, raw: dict):
        return cls(
            id=raw.get("id", ""),
            role_definition_id=raw.get("roleDefinitionId", ""),
            principal_id=raw.get("principalId", ""),
            directory_scope_id=raw.get("directoryScopeId") or "/",
            created=parse_datetime(raw.get("createdDateTime")),
        )


@dataclass
class RoleEligibility(RoleAssignment):
    """Eligible-but-not-active role grant (PIM eligibility schedule)."""
    pass


class RequestType(str, Enum):
    ASSIGNMENT = "Assignment"
    ELIGIBILITY = "Eligibility"


@dataclass
class RoleRequest(Record):
    """PIM assignment / eligibility schedule request."""
    id: str
    request_type: RequestType
    action: str
    status: str
    role_definition_id: str
    principal_id: str
    created: Optional[datetime] = None
    created_by: Optional[str] = None
    created_by_id: Optional[str] = None
    justification: Optional[str] = None
    ticket_number: Optional[str] = None
    ticket_system: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    directory_scope_id: str = "/"

    @classmethod
    def from_graph(cls, raw: dict, request_type: RequestType) -> "RoleRequest":
        schedule = raw.get("scheduleInfo") or {}
        expiration = schedule.get("expiration") or {}
        ticket = raw.get("ticketInfo") or {}
        created_by = raw.get("createdBy") or {}
        actor = created_by.get("user") or created_by.get("application") or {}
        return cls(
            id=raw.get("id", ""),
            request_type=request_type,
            action=raw.get("action") or "",
            status=raw.get("status") or "",
            role_definition_id=raw.get("roleDefinitionId", ""),
            principal_id=raw.get("principalId", ""),
            created=parse_datetime(raw.get("createdDateTime")),
            created_by=actor.get("displayName"),
            created_by_id=actor.get("id"),
            justification=raw.get("justification"),
            ticket_number=ticket.get("ticketNumber"),
            ticket_system=ticket.get("ticketSystem"),
            start=parse_datetime(schedule.get("startDateTime")),
            end=parse_datetime(expiration.get("endDateTime")),
            directory_scope_id=raw.get("directoryScopeId") or "/",
        )


# ---------------------------------------------------------------------------
# Role output rows
# ---------------------------------------------------------------------------

@dataclass
class RoleMember(Record):
    principal_id: str
    display_name: str
    principal_type: PrincipalType
    assignment: str                      # Direct, Eligible or Group
    via_group: Optional[str] = None      # Group display name for expanded members


@dataclass
class RoleMembershipRow(Record):
    role_id: str
    role_name: str
    description: str = ""
    is_built_in: Optional[bool] = None
    is_enabled: Optional[bool] = None
    permission_count: int = 0
    direct_count: int = 0
    eligible_count: int = 0
    group_member_count: int = 0
    total_count: int = 0
    user_count: int = 0
    group_count: int = 0
    service_principal_count: int = 0
    unknown_count: int = 0
    members: list[RoleMember] = field(default_factory=list)


@dataclass
class RoleHistoryRow(Record):
    created: Optional[datetime]
    request_type: RequestType
    action: str
    action_code: str
    status: str
    status_code: str
    role_id: str
    role_name: str
    principal_id: str
    principal_name: str
    principal_type: PrincipalType
    requested_by: Optional[str] = None
    justification: Optional[str] = None
    ticket_number: Optional[str] = None
    ticket_system: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration: Optional[timedelta] = None


# ---------------------------------------------------------------------------
# Application credentials
# ---------------------------------------------------------------------------

class CredentialType(str, Enum):
    PASSWORD = "Password"
    CERTIFICATE = "Certificate"


@dataclass
class AppCredential(Record):
    app_object_id: str
    app_id: Optional[str]
    app_name: str
    credential_type: CredentialType
    key_id: str
    display_name: Optional[str]
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    expired: bool = False
    days_to_expire: Optional[int] = None
    hint: Optional[str] = None
    key_type: Optional[str] = None
    key_usage: Optional[str] = None


@dataclass
class NewCredentialResult(Record):
    app_object_id: str
    app_id: Optional[str]
    app_name: str
    key_id: str
    display_name: Optional[str]
    secret_text: str
    hint: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    dry_run: bool = False
    message: Optional[str] = None


class RemovalStatus(str, Enum):
    REMOVED = "Removed"
    FAILED = "Failed"
    SKIPPED = "Skipped"
    DRY_RUN = "DryRun"


@dataclass
class CredentialRemovalResult(Record):
    status: RemovalStatus
    app_object_id: str
    app_id: Optional[str]
    app_name: str
    key_id: str
    credential_name: Optional[str]
    credential_type: CredentialType
    message: str

    @property
    def success(self) -> bool:
        return self.status is RemovalStatus.REMOVED


# ---------------------------------------------------------------------------
# Defender
# ---------------------------------------------------------------------------

@dataclass
class ControlScoreRow(Record):
    control_name: str
    title: Optional[str]
    category: Optional[str]
    score: float
    max_score: Optional[float]
    points_lost: Optional[float]
    implementation_status: Optional[str] = None
    user_impact: Optional[str] = None
    implementation_cost: Optional[str] = None
    action_url: Optional[str] = None


@dataclass
class SecureScoreRow(Record):
    created: Optional[datetime]
    current_score: float
    max_score: float
    percentage: float
    licensed_user_count: Optional[int] = None
    active_user_count: Optional[int] = None
    enabled_services: list[str] = field(default_factory=list)
    controls: list[ControlScoreRow] = field(default_factory=list)


@dataclass
class SecureScoreControlProfile(Record):
    id: str
    title: Optional[str]
    control_category: Optional[str]
    max_score: Optional[float]
    rank: Optional[int] = None
    tier: Optional[str] = None
    user_impact: Optional[str] = None
    implementation_cost: Optional[str] = None
    service: Optional[str] = None
    deprecated: Optional[bool] = None
    action_url: Optional[str] = None
    threats: list[str] = field(default_factory=list)


@dataclass
class IdentitySensor(Record):
    id: str
    display_name: Optional[str]
    domain_name: Optional[str]
    sensor_type: Optional[str]
    deployment_status: Optional[str]
    health_status: Optional[str]
    version: Optional[str] = None
    created: Optional[datetime] = None


@dataclass
class SensorDeploymentInfo(Record):
    access_key: Optional[str]
    package_uri: Optional[str]
    package_uri_expiry: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Teams / terms of use
# ---------------------------------------------------------------------------

@dataclass
class TeamRow(Record):
    id: str
    display_name: str
    description: Optional[str] = None
    visibility: Optional[str] = None
    owners: list[str] = field(default_factory=list)
    owner_count: int = 0


@dataclass
class AgreementRow(Record):
    id: str
    display_name: str
    is_viewing_before_acceptance_required: Optional[bool] = None
    is_per_device_acceptance_required: Optional[bool] = None
    user_reaccept_required_frequency: Optional[str] = None
    terms_expiration_start: Optional[datetime] = None
    terms_expiration_frequency: Optional[str] = None
