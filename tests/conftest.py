"""
Shared fixtures: an in-memory Graph client that records every call, and a
small directory (users, groups, service principals, roles) to join against.
"""

from __future__ import annotations

from typing import Any, Callable, Union

import pytest

from m365_toolkit.graph.client import GraphAPIError

Route = Union[Any, Exception, Callable[[dict], Any]]


class FakeGraph:
    """
    Stand-in for GraphClient.

    `pages` answers get_all_pages, `objects` answers get/post/patch, `texts`
    answers get_text. A route may be a value, an exception instance (raised),
    or a callable taking the request params / body.
    """

    def __init__(
        self,
        pages: dict[str, Route] | None = None,
        objects: dict[str, Route] | None = None,
        texts: dict[str, Route] | None = None,
    ):
        self.pages = dict(pages or {})
        self.objects = dict(objects or {})
        self.texts = dict(texts or {})
        self.calls: list[tuple[str, str, Any]] = []

    def _answer(self, table: dict, endpoint: str, arg: Any, default: Any = None):
        if endpoint not in table:
            if default is not None:
                return default
            raise GraphAPIError(404, "Resource not found", endpoint)
        value = table[endpoint]
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return value(arg)
        return value

    async def get(self, endpoint, params=None, beta=False):
        self.calls.append(("GET", endpoint, params))
        return self._answer(self.objects, endpoint, params)

    async def get_all_pages(self, endpoint, params=None, beta=False, select=None, skip_top=False):
        self.calls.append(("GET_ALL", endpoint, params))
        return list(self._answer(self.pages, endpoint, params))

    async def get_text(self, endpoint, beta=False):
        self.calls.append(("GET_TEXT", endpoint, None))
        return self._answer(self.texts, endpoint, None)

    async def post(self, endpoint, json_body, beta=False):
        self.calls.append(("POST", endpoint, json_body))
        return self._answer(self.objects, endpoint, json_body, default={})

    async def patch(self, endpoint, json_body, beta=False):
        self.calls.append(("PATCH", endpoint, json_body))
        return self._answer(self.objects, endpoint, json_body, default={})

    # --- Inspection helpers ---

    def count(self, method: str, endpoint: str) -> int:
        return sum(1 for m, e, _ in self.calls if m == method and e == endpoint)

    def writes(self) -> list[tuple[str, str, Any]]:
        return [c for c in self.calls if c[0] in ("POST", "PATCH")]

    def params_for(self, endpoint: str) -> Any:
        for _, e, params in self.calls:
            if e == endpoint:
                return params
        raise AssertionError(f"{endpoint} was never requested")


@pytest.fixture
def directory_pages() -> dict[str, Any]:
    """Principals and role definitions shared by the role tests."""
    return {
        "users": [
            {"id": "u1", "displayName": "Alice Admin", "userPrincipalName": "alice@contoso.com"},
            {"id": "u2", "displayName": "Bob Builder", "userPrincipalName": "bob@contoso.com"},
            {"id": "u3", "displayName": "Carol Ops", "userPrincipalName": "carol@contoso.com"},
        ],
        "groups": [
            {"id": "g1", "displayName": "Tier0 Admins", "securityEnabled": True, "isAssignableToRole": True},
        ],
        "servicePrincipals": [
            {"id": "sp1", "displayName": "Automation App", "appId": "app-sp1"},
        ],
        "roleManagement/directory/roleDefinitions": [
            {
                "id": "r-ga",
                "displayName": "Global Administrator",
                "isBuiltIn": True,
                "rolePermissions": [{"allowedResourceActions": ["a", "b", "c"]}],
            },
            {"id": "r-ua", "displayName": "User Administrator", "isBuiltIn": True},
            {"id": "r-hd", "displayName": "Helpdesk Administrator", "isBuiltIn": True},
            {"id": "r-rr", "displayName": "Reports Reader", "isBuiltIn": True},
        ],
    }
