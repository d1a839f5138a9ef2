"""
Directory Role Collector
Role membership (direct, PIM-eligible and group-expanded) and PIM request
history, built by joining several independently fetched collections
through the lookup caches.
"""

from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..models import (
    Principal,
    PrincipalType,
    RoleAssignment,
    RoleDefinition,
    RoleEligibility,
    RoleHistoryRow,
    RoleMember,
    RoleMembershipRow,
    RoleRequest,
    like,
)
from .base import BaseCollector, CollectorResult, FetchRequest
from .lookup import (
    PrincipalCache,
    RoleCache,
    principal_requests,
    role_definition_request,
    tag_requests,
)

logger = logging.getLogger("m365_toolkit.collectors.roles")

ASSIGNMENTS_ENDPOINT = "roleManagement/directory/roleAssignments"
ELIGIBILITY_ENDPOINT = "roleManagement/directory/roleEligibilitySchedules"
ASSIGNMENT_REQUESTS_ENDPOINT = "roleManagement/directory/roleAssignmentScheduleRequests"
ELIGIBILITY_REQUESTS_ENDPOINT = "roleManagement/directory/roleEligibilityScheduleRequests"

ASSIGNMENT_FIELDS = ["id", "roleDefinitionId", "principalId", "directoryScopeId"]
ELIGIBILITY_FIELDS = ASSIGNMENT_FIELDS + ["createdDateTime"]
REQUEST_FIELDS = [
    "id", "action", "status", "roleDefinitionId", "principalId", "directoryScopeId",
    "createdDateTime", "createdBy", "justification", "ticketInfo", "scheduleInfo",
]
MEMBER_FIELDS = ["id", "displayName", "userPrincipalName", "mail", "accountEnabled", "appId"]

# Request states that represent a final outcome
TERMINAL_STATUSES = {"provisioned", "revoked", "granted", "denied"}

ACTION_LABELS = {
    "adminassign": "Assigned by admin",
    "adminupdate": "Updated by admin",
    "adminremove": "Removed by admin",
    "adminextend": "Extended by admin",
    "adminrenew": "Renewed by admin",
    "selfactivate": "Activated",
    "selfdeactivate": "Deactivated",
    "selfextend": "Extension requested",
    "selfrenew": "Renewal requested",
    "unknownfuturevalue": "Unknown",
}

STATUS_LABELS = {
    "provisioned": "Provisioned",
    "revoked": "Revoked",
    "granted": "Granted",
    "denied": "Denied",
    "canceled": "Canceled",
    "failed": "Failed",
    "pendingadmindecision": "Pending admin decision",
    "pendingapproval": "Pending approval",
    "pendingapprovalprovisioning": "Pending approval provisioning",
    "pendingprovisioning": "Pending provisioning",
    "pendingrevocation": "Pending revocation",
    "pendingschedulecreation": "Pending schedule creation",
    "pendingexternalprovisioning": "Pending external provisioning",
    "schedulecreated": "Schedule created",
    "scheduleactive": "Schedule active",
    "timedout": "Timed out",
}

_OLDEST = datetime.min.replace(tzinfo=timezone.utc)


def translate(code: str, table: dict[str, str]) -> str:
    """Human-readable label for a Graph enum code; unknown codes pass through."""
    label = table.get((code or "").lower())
    if label is None:
        logger.debug(f"No label for code '{code}', passing through")
        return code
    return label


class _RoleMembership:
    """Per-role accumulator for direct, eligible and group-expanded principals."""

    def __init__(self, role: RoleDefinition):
        self.role = role
        self.direct: dict[str, Principal] = {}
        self.eligible: dict[str, Principal] = {}
        self.expanded: dict[str, tuple[Principal, str]] = {}

    def add(self, principal: Principal, eligible: bool):
        target = self.eligible if eligible else self.direct
        target.setdefault(principal.id, principal)

    def groups(self) -> list[Principal]:
        found: dict[str, Principal] = {}
        for principal in list(self.direct.values()) + list(self.eligible.values()):
            if principal.principal_type is PrincipalType.GROUP:
                found.setdefault(principal.id, principal)
        return list(found.values())

    def add_group_members(self, group: Principal, members: list[Principal]):
        for member in members:
            self.expanded.setdefault(member.id, (member, group.display_name))

    def to_row(self) -> RoleMembershipRow:
        members = [
            RoleMember(p.id, p.display_name, p.principal_type, "Direct")
            for p in self.direct.values()
        ]
        members += [
            RoleMember(p.id, p.display_name, p.principal_type, "Eligible")
            for p in self.eligible.values()
        ]
        members += [
            RoleMember(p.id, p.display_name, p.principal_type, "Group", via_group=group_name)
            for p, group_name in self.expanded.values()
        ]

        distinct: dict[str, Principal] = {}
        for p in self.direct.values():
            distinct.setdefault(p.id, p)
        for p in self.eligible.values():
            distinct.setdefault(p.id, p)
        for p, _ in self.expanded.values():
            distinct.setdefault(p.id, p)
        by_type = Counter(p.principal_type for p in distinct.values())

        role = self.role
        return RoleMembershipRow(
            role_id=role.id,
            role_name=role.display_name,
            description=role.description,
            is_built_in=role.is_built_in,
            is_enabled=role.is_enabled,
            permission_count=role.permission_count,
            direct_count=len(self.direct),
            eligible_count=len(self.eligible),
            group_member_count=len(self.expanded),
            total_count=len(distinct),
            user_count=by_type[PrincipalType.USER],
            group_count=by_type[PrincipalType.GROUP],
            service_principal_count=by_type[PrincipalType.SERVICE_PRINCIPAL],
            unknown_count=by_type[PrincipalType.UNKNOWN],
            members=members,
        )


class RoleCollector(BaseCollector):
    name = "roles"
    description = "Directory role membership and PIM request history"

    # ── Role membership ─────────────────────────────────────────────────────

    async def get_roles(
        self,
        role_name: Optional[str] = None,
        hide_empty: bool = False,
        expand_groups: bool = True,
    ) -> list[RoleMembershipRow]:
        """
        One row per role definition with direct, eligible and
        group-expanded member counts. Raises FetchAborted if any source
        could not be read.
        """
        result = self.new_result()
        fetched = await self.fetch_all(
            principal_requests() + [
                role_definition_request(),
                FetchRequest("role_assignments", ASSIGNMENTS_ENDPOINT, select=ASSIGNMENT_FIELDS),
                FetchRequest("role_eligibilities", ELIGIBILITY_ENDPOINT, select=ELIGIBILITY_FIELDS),
            ],
            result,
        )

        principals = PrincipalCache.build(
            fetched["users"], fetched["groups"], fetched["service_principals"]
        )
        roles = RoleCache.from_graph(self.graph, fetched["role_definitions"])

        memberships: dict[str, _RoleMembership] = {r.id: _RoleMembership(r) for r in roles}
        grants = [
            (RoleAssignment.from_graph(raw), False) for raw in fetched["role_assignments"]
        ] + [
            (RoleEligibility.from_graph(raw), True) for raw in fetched["role_eligibilities"]
        ]

        for grant, eligible in grants:
            role = await roles.resolve(grant.role_definition_id)
            if role is None:
                kind = "eligibility" if eligible else "assignment"
                result.add_warning(
                    f"Dropping {kind} {grant.id}: role {grant.role_definition_id} not found"
                )
                continue
            membership = memberships.setdefault(role.id, _RoleMembership(role))
            membership.add(principals.resolve(grant.principal_id), eligible)

        # Match names on resolved roles, point-looked-up ones included
        if role_name:
            memberships = {
                role_id: m for role_id, m in memberships.items()
                if like(m.role.display_name, role_name)
            }
            if not memberships:
                result.add_warning(f"No role definition matches '{role_name}'")
                return []

        if expand_groups:
            expanded: dict[str, list[Principal]] = {}
            for membership in memberships.values():
                for group in membership.groups():
                    if group.display_name not in expanded:
                        expanded[group.display_name] = await self._expand_group(
                            group, principals, result
                        )
                    membership.add_group_members(group, expanded[group.display_name])
            result.metadata["groups_expanded"] = len(expanded)

        rows = []
        for membership in memberships.values():
            row = membership.to_row()
            if hide_empty and row.direct_count == 0 and row.eligible_count == 0:
                continue
            rows.append(row)

        rows.sort(key=lambda r: r.role_name.lower())
        result.metadata["fallback_role_lookups"] = roles.fallback_lookups
        result.add_data("roles", rows)
        result.complete()
        return rows

    async def _expand_group(
        self,
        group: Principal,
        principals: PrincipalCache,
        result: CollectorResult,
    ) -> list[Principal]:
        """Transitive members of a role-holding group, resolved via the cache."""
        try:
            raw_members = await self.graph.get_all_pages(
                f"groups/{group.id}/transitiveMembers",
                select=MEMBER_FIELDS,
            )
        except Exception as e:
            result.add_warning(f"Could not expand group {group.display_name}: {e}")
            return []
        result.metadata["endpoints_queried"] += 1

        members = []
        for raw in raw_members:
            if not raw.get("id"):
                continue
            members.append(principals.get(raw["id"]) or Principal.from_directory_object(raw))
        logger.debug(f"Group {group.display_name} expanded to {len(members)} members")
        return members

    # ── Role history ────────────────────────────────────────────────────────

    async def get_role_history(
        self,
        days: Optional[int] = None,
        role_name: Optional[str] = None,
        principal: Optional[str] = None,
        include_all_statuses: bool = False,
        now: Optional[datetime] = None,
    ) -> list[RoleHistoryRow]:
        """
        PIM assignment and eligibility requests created in the last `days`
        days, newest first. Only final states are kept unless
        include_all_statuses is set.
        """
        now = now or datetime.now(timezone.utc)
        if days is None:
            days = self.config.history_days
        created_after = (now - timedelta(days=days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        date_filter = {"$filter": f"createdDateTime ge {created_after}"}

        result = self.new_result()
        fetched = await self.fetch_all(
            principal_requests() + [
                role_definition_request(),
                FetchRequest(
                    "assignment_requests",
                    ASSIGNMENT_REQUESTS_ENDPOINT,
                    select=REQUEST_FIELDS,
                    params=dict(date_filter),
                ),
                FetchRequest(
                    "eligibility_requests",
                    ELIGIBILITY_REQUESTS_ENDPOINT,
                    select=REQUEST_FIELDS,
                    params=dict(date_filter),
                ),
            ],
            result,
        )

        principals = PrincipalCache.build(
            fetched["users"], fetched["groups"], fetched["service_principals"]
        )
        roles = RoleCache.from_graph(self.graph, fetched["role_definitions"])

        principal_ids: Optional[set[str]] = None
        if principal:
            matched_principals = principals.find(principal)
            if not matched_principals:
                result.add_warning(f"No principal matches '{principal}'")
                return []
            principal_ids = {p.id for p in matched_principals}

        requests = tag_requests(fetched["assignment_requests"], fetched["eligibility_requests"])

        rows = []
        for request in requests:
            if principal_ids is not None and request.principal_id not in principal_ids:
                continue
            if not include_all_statuses and request.status.lower() not in TERMINAL_STATUSES:
                continue
            role = await roles.resolve(request.role_definition_id)
            if role_name and (role is None or not like(role.display_name, role_name)):
                continue
            rows.append(self._history_row(request, role, principals))

        if role_name and not rows:
            result.add_warning(f"No requests match role '{role_name}'")

        # sorted() is stable with reverse=True; equal timestamps keep input order
        rows.sort(key=lambda r: r.created or _OLDEST, reverse=True)

        result.metadata["fallback_role_lookups"] = roles.fallback_lookups
        result.add_data("history", rows)
        result.complete()
        return rows

    def _history_row(
        self,
        request: RoleRequest,
        role: Optional[RoleDefinition],
        principals: PrincipalCache,
    ) -> RoleHistoryRow:
        subject = principals.resolve(request.principal_id)
        if role is None:
            role = RoleDefinition.unknown(request.role_definition_id)

        requested_by = request.created_by
        if not requested_by and request.created_by_id:
            requested_by = principals.resolve(request.created_by_id).display_name

        duration = None
        if request.start and request.end:
            duration = request.end - request.start

        return RoleHistoryRow(
            created=request.created,
            request_type=request.request_type,
            action=translate(request.action, ACTION_LABELS),
            action_code=request.action,
            status=translate(request.status, STATUS_LABELS),
            status_code=request.status,
            role_id=request.role_definition_id,
            role_name=role.display_name,
            principal_id=subject.id,
            principal_name=subject.display_name,
            principal_type=subject.principal_type,
            requested_by=requested_by,
            justification=request.justification,
            ticket_number=request.ticket_number,
            ticket_system=request.ticket_system,
            start=request.start,
            end=request.end,
            duration=duration,
        )
