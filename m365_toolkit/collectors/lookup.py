"""
Lookup caches — id → record maps built from fetched entity collections.

Principals from users, groups and service principals are merged into one
map (ids are unique across the three). Role definitions are resolved from
the bulk list first and from one memoized point lookup on a miss.
"""

from __future__ import annotations

import logging
from typing import Iterator, Optional

from ..graph.client import GraphClient
from ..models import Principal, RequestType, RoleDefinition, RoleRequest
from .base import FetchRequest

logger = logging.getLogger("m365_toolkit.collectors.lookup")

ROLE_DEFINITIONS_ENDPOINT = "roleManagement/directory/roleDefinitions"

USER_FIELDS = ["id", "displayName", "userPrincipalName", "mail", "accountEnabled"]
GROUP_FIELDS = ["id", "displayName", "mail", "securityEnabled", "isAssignableToRole"]
SERVICE_PRINCIPAL_FIELDS = ["id", "displayName", "appId", "servicePrincipalType", "accountEnabled"]
ROLE_FIELDS = ["id", "displayName", "description", "isBuiltIn", "isEnabled", "rolePermissions"]


def principal_requests() -> list[FetchRequest]:
    """Queries for every principal source a role can point at."""
    return [
        FetchRequest("users", "users", select=USER_FIELDS),
        FetchRequest(
            "groups",
            "groups",
            select=GROUP_FIELDS,
            params={"$filter": "isAssignableToRole eq true"},
        ),
        FetchRequest("service_principals", "servicePrincipals", select=SERVICE_PRINCIPAL_FIELDS),
    ]


def role_definition_request() -> FetchRequest:
    # roleDefinitions does not support $top
    return FetchRequest("role_definitions", ROLE_DEFINITIONS_ENDPOINT, select=ROLE_FIELDS, skip_top=True)


class PrincipalCache:
    """Ordered id → Principal map with placeholder resolution."""

    def __init__(self, principals: Optional[dict[str, Principal]] = None):
        self._principals: dict[str, Principal] = dict(principals or {})

    @classmethod
    def build(
        cls,
        users: list[dict],
        groups: list[dict],
        service_principals: list[dict],
    ) -> "PrincipalCache":
        cache = cls()
        for raw in users:
            cache.add(Principal.from_user(raw))
        for raw in groups:
            cache.add(Principal.from_group(raw))
        for raw in service_principals:
            cache.add(Principal.from_service_principal(raw))
        logger.debug(f"Principal cache built with {len(cache)} entries")
        return cache

    def add(self, principal: Principal):
        self._principals[principal.id] = principal

    def get(self, principal_id: str) -> Optional[Principal]:
        return self._principals.get(principal_id)

    def resolve(self, principal_id: str) -> Principal:
        """Return the cached principal or an 'Unknown (<id>)' placeholder."""
        principal = self._principals.get(principal_id)
        if principal is None:
            logger.debug(f"Principal {principal_id} not found in cache")
            return Principal.unknown(principal_id)
        return principal

    def find(self, pattern: str) -> list[Principal]:
        """Principals whose UPN or display name matches the wildcard."""
        return [p for p in self._principals.values() if p.matches(pattern)]

    def __contains__(self, principal_id: object) -> bool:
        return principal_id in self._principals

    def __len__(self) -> int:
        return len(self._principals)

    def __iter__(self) -> Iterator[Principal]:
        return iter(self._principals.values())


class RoleCache:
    """
    Ordered id → RoleDefinition map.

    resolve() falls back to a single point lookup per distinct missing id;
    both hits and permanent misses are memoized.
    """

    def __init__(self, graph: GraphClient, definitions: Optional[list[RoleDefinition]] = None):
        self.graph = graph
        self._roles: dict[str, RoleDefinition] = {r.id: r for r in definitions or []}
        self._misses: set[str] = set()
        self.fallback_lookups = 0

    @classmethod
    def from_graph(cls, graph: GraphClient, raw_definitions: list[dict]) -> "RoleCache":
        return cls(graph, [RoleDefinition.from_graph(r) for r in raw_definitions])

    def get(self, role_id: str) -> Optional[RoleDefinition]:
        return self._roles.get(role_id)

    async def resolve(self, role_id: str) -> Optional[RoleDefinition]:
        role = self._roles.get(role_id)
        if role is not None:
            return role
        if role_id in self._misses:
            return None

        self.fallback_lookups += 1
        try:
            raw = await self.graph.get(f"{ROLE_DEFINITIONS_ENDPOINT}/{role_id}")
        except Exception as e:
            logger.warning(f"Role definition {role_id} could not be resolved: {e}")
            self._misses.add(role_id)
            return None

        if not raw:
            logger.warning(f"Role definition {role_id} lookup returned no data")
            self._misses.add(role_id)
            return None

        role = RoleDefinition.from_graph({**raw, "id": raw.get("id") or role_id})
        self._roles[role_id] = role
        logger.info(f"Resolved role {role.display_name} ({role_id}) by point lookup")
        return role

    def __contains__(self, role_id: object) -> bool:
        return role_id in self._roles

    def __len__(self) -> int:
        return len(self._roles)

    def __iter__(self) -> Iterator[RoleDefinition]:
        return iter(list(self._roles.values()))


def tag_requests(
    assignment_requests: list[dict],
    eligibility_requests: list[dict],
) -> list[RoleRequest]:
    """Tag each raw request with its origin and merge into one sequence."""
    merged = [RoleRequest.from_graph(r, RequestType.ASSIGNMENT) for r in assignment_requests]
    merged.extend(RoleRequest.from_graph(r, RequestType.ELIGIBILITY) for r in eligibility_requests)
    return merged
