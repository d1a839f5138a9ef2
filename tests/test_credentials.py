"""
Tests for application credential inspection, creation and removal.
"""

import base64
import codecs
from datetime import datetime, timedelta, timezone

import pytest

from m365_toolkit.collectors.credentials import (
    AppCredentialCollector,
    credential_display_name,
    days_until,
    decode_key_identifier,
)
from m365_toolkit.graph.client import GraphAPIError
from m365_toolkit.models import CredentialType, RemovalStatus

from conftest import FakeGraph

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


APPS = [
    {
        "id": "obj-1",
        "appId": "app-1",
        "displayName": "Payroll",
        "passwordCredentials": [
            {"keyId": "p1", "displayName": "old", "endDateTime": _iso(NOW - timedelta(days=1))},
            {"keyId": "p2", "displayName": "current", "endDateTime": _iso(NOW + timedelta(days=10))},
        ],
        "keyCredentials": [
            {
                "keyId": "k1",
                "customKeyIdentifier": _b64("CN=payroll".encode("utf-16-le")),
                "endDateTime": _iso(NOW + timedelta(days=100)),
                "type": "AsymmetricX509Cert",
                "usage": "Verify",
            },
        ],
    },
    {
        "id": "obj-2",
        "appId": "app-2",
        "displayName": "Portal",
        "passwordCredentials": [
            {"keyId": "p3", "displayName": "portal-secret", "endDateTime": _iso(NOW + timedelta(days=45))},
        ],
        "keyCredentials": [
            {
                "keyId": "k2",
                "customKeyIdentifier": _b64(codecs.BOM_UTF16_LE + "Portal cert".encode("utf-16-le")),
                "endDateTime": _iso(NOW - timedelta(days=5)),
            },
        ],
    },
]


def _applications(params):
    """Honour the displayName eq filter the way Graph does."""
    flt = (params or {}).get("$filter", "")
    if not flt:
        return APPS
    return [a for a in APPS if f"'{a['displayName']}'" in flt]


@pytest.fixture
def graph():
    return FakeGraph(
        pages={"applications": _applications},
        objects={
            "applications/obj-1": {"id": "obj-1", "appId": "app-1", "displayName": "Payroll"},
            "applications/obj-2": {
                "id": "obj-2",
                "keyCredentials": [{"keyId": "k2"}, {"keyId": "k-other"}],
            },
        },
    )


def _keys(creds):
    return sorted(c.key_id for c in creds)


class TestKeyIdentifierDecoding:
    """customKeyIdentifier byte sniffing."""

    def test_bomless_utf16_le(self):
        assert decode_key_identifier("CN=x".encode("utf-16-le")) == "CN=x"

    def test_utf16_le_bom(self):
        assert decode_key_identifier(codecs.BOM_UTF16_LE + "abc".encode("utf-16-le")) == "abc"

    def test_utf16_be_bom(self):
        assert decode_key_identifier(codecs.BOM_UTF16_BE + "abc".encode("utf-16-be")) == "abc"

    def test_utf32_le_bom_not_mistaken_for_utf16(self):
        assert decode_key_identifier(codecs.BOM_UTF32_LE + "abc".encode("utf-32-le")) == "abc"

    def test_utf32_be_bom(self):
        assert decode_key_identifier(codecs.BOM_UTF32_BE + "abc".encode("utf-32-be")) == "abc"

    def test_utf8_bom(self):
        assert decode_key_identifier(codecs.BOM_UTF8 + "héllo".encode("utf-8")) == "héllo"

    def test_plain_utf8(self):
        assert decode_key_identifier(b"deploy-key") == "deploy-key"

    def test_empty(self):
        assert decode_key_identifier(b"") is None
        assert decode_key_identifier(b"\x00\x00") is None

    def test_display_name_wins(self):
        cred = {"displayName": "named", "customKeyIdentifier": _b64(b"other")}
        assert credential_display_name(cred) == "named"

    def test_invalid_base64(self):
        assert credential_display_name({"customKeyIdentifier": "not base64!!"}) is None
        assert credential_display_name({}) is None


class TestExpiry:
    """Whole-day expiry arithmetic."""

    def test_yesterday_is_expired(self):
        assert days_until(NOW - timedelta(days=1), NOW) == -1

    def test_truncates_toward_zero(self):
        assert days_until(NOW + timedelta(days=10, hours=23), NOW) == 10
        assert days_until(NOW - timedelta(hours=23), NOW) == 0

    def test_no_end(self):
        assert days_until(None, NOW) is None


class TestGetCredentials:
    """Listing and composable filters."""

    @pytest.mark.asyncio
    async def test_one_record_per_credential(self, graph):
        creds = await AppCredentialCollector(graph).get_credentials(now=NOW)
        assert _keys(creds) == ["k1", "k2", "p1", "p2", "p3"]

        by_key = {c.key_id: c for c in creds}
        assert by_key["p1"].expired is True
        assert by_key["p1"].days_to_expire == -1
        assert by_key["p2"].expired is False
        assert by_key["p2"].days_to_expire == 10
        assert by_key["k1"].credential_type is CredentialType.CERTIFICATE
        assert by_key["k1"].display_name == "CN=payroll"
        assert by_key["k2"].display_name == "Portal cert"
        assert by_key["p3"].app_name == "Portal"

    @pytest.mark.asyncio
    async def test_select_narrows_application_fields(self, graph):
        await AppCredentialCollector(graph).get_credentials(now=NOW)
        assert graph.count("GET_ALL", "applications") == 1

    @pytest.mark.asyncio
    async def test_app_name_filter(self, graph):
        creds = await AppCredentialCollector(graph).get_credentials(app_name="Portal", now=NOW)
        assert _keys(creds) == ["k2", "p3"]
        assert graph.params_for("applications") == {"$filter": "displayName eq 'Portal'"}

    @pytest.mark.asyncio
    async def test_unknown_app_returns_empty(self, graph):
        assert await AppCredentialCollector(graph).get_credentials(app_name="Nope", now=NOW) == []

    @pytest.mark.asyncio
    async def test_less_than_days_includes_expired(self, graph):
        creds = await AppCredentialCollector(graph).get_credentials(less_than_days=30, now=NOW)
        assert _keys(creds) == ["k2", "p1", "p2"]

    @pytest.mark.asyncio
    async def test_greater_than_days(self, graph):
        creds = await AppCredentialCollector(graph).get_credentials(greater_than_days=30, now=NOW)
        assert _keys(creds) == ["k1", "p3"]

    @pytest.mark.asyncio
    async def test_expired_only(self, graph):
        creds = await AppCredentialCollector(graph).get_credentials(expired_only=True, now=NOW)
        assert _keys(creds) == ["k2", "p1"]

    @pytest.mark.asyncio
    async def test_filters_compose(self, graph):
        collector = AppCredentialCollector(graph)
        window = await collector.get_credentials(greater_than_days=30, less_than_days=50, now=NOW)
        assert _keys(window) == ["p3"]

        named = await collector.get_credentials(credential_name="portal*", expired_only=True, now=NOW)
        assert _keys(named) == ["k2"]


class TestRemoveCredentials:
    """Removal with dry run, confirmation and per-item results."""

    @pytest.mark.asyncio
    async def test_refuses_without_filter(self, graph):
        with pytest.raises(ValueError):
            await AppCredentialCollector(graph).remove_credentials(now=NOW)
        assert graph.calls == []

    @pytest.mark.asyncio
    async def test_dry_run_makes_no_writes(self, graph):
        results = await AppCredentialCollector(graph).remove_credentials(
            expired_only=True, dry_run=True, now=NOW
        )
        assert [r.status for r in results] == [RemovalStatus.DRY_RUN, RemovalStatus.DRY_RUN]
        assert all("What if" in r.message for r in results)
        assert graph.writes() == []

    @pytest.mark.asyncio
    async def test_removes_password_and_certificate(self, graph):
        results = await AppCredentialCollector(graph).remove_credentials(expired_only=True, now=NOW)

        assert [(r.key_id, r.status) for r in results] == [
            ("p1", RemovalStatus.REMOVED),
            ("k2", RemovalStatus.REMOVED),
        ]
        assert all(r.success for r in results)
        assert graph.writes() == [
            ("POST", "applications/obj-1/removePassword", {"keyId": "p1"}),
            ("PATCH", "applications/obj-2", {"keyCredentials": [{"keyId": "k-other"}]}),
        ]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_siblings(self, graph):
        graph.objects["applications/obj-1/removePassword"] = GraphAPIError(403, "Insufficient privileges", "x")
        results = await AppCredentialCollector(graph).remove_credentials(expired_only=True, now=NOW)

        status = {r.key_id: r for r in results}
        assert status["p1"].status is RemovalStatus.FAILED
        assert "Insufficient privileges" in status["p1"].message
        assert not status["p1"].success
        assert status["k2"].status is RemovalStatus.REMOVED

    @pytest.mark.asyncio
    async def test_certificate_already_gone_fails(self, graph):
        graph.objects["applications/obj-2"] = {"id": "obj-2", "keyCredentials": [{"keyId": "k-other"}]}
        results = await AppCredentialCollector(graph).remove_credentials(key_id="k2", now=NOW)

        assert [r.status for r in results] == [RemovalStatus.FAILED]
        assert graph.writes() == []

    @pytest.mark.asyncio
    async def test_declined_confirmation_skips(self, graph):
        prompts = []

        def decline(description):
            prompts.append(description)
            return False

        results = await AppCredentialCollector(graph).remove_credentials(
            app_name="Payroll", credential_name="old", confirm=decline, now=NOW
        )
        assert [r.status for r in results] == [RemovalStatus.SKIPPED]
        assert "p1" in prompts[0]
        assert graph.writes() == []

    @pytest.mark.asyncio
    async def test_nothing_matched(self, graph):
        results = await AppCredentialCollector(graph).remove_credentials(key_id="nope", now=NOW)
        assert results == []


class TestNewCredential:
    """Client secret creation."""

    @pytest.mark.asyncio
    async def test_adds_secret_by_object_id(self, graph):
        graph.objects["applications/obj-1/addPassword"] = {
            "keyId": "new-key",
            "displayName": "ci",
            "secretText": "s3cret",
            "hint": "s3c",
            "endDateTime": "2024-11-28T00:00:00Z",
        }
        created = await AppCredentialCollector(graph).new_credential(
            app_object_id="obj-1", display_name="ci", now=NOW
        )

        assert created.secret_text == "s3cret"
        assert created.key_id == "new-key"
        assert created.app_name == "Payroll"
        assert graph.writes() == [(
            "POST",
            "applications/obj-1/addPassword",
            {"passwordCredential": {"displayName": "ci", "endDateTime": "2024-11-28T00:00:00Z"}},
        )]

    @pytest.mark.asyncio
    async def test_adds_secret_by_name(self, graph):
        graph.objects["applications/obj-2/addPassword"] = {"keyId": "n2", "secretText": "x"}
        created = await AppCredentialCollector(graph).new_credential(
            app_name="Portal", display_name="ci", valid_days=30, now=NOW
        )
        assert created.key_id == "n2"
        body = graph.writes()[0][2]
        assert body["passwordCredential"]["endDateTime"] == "2024-07-01T00:00:00Z"

    @pytest.mark.asyncio
    async def test_requires_exactly_one_target(self, graph):
        with pytest.raises(ValueError):
            await AppCredentialCollector(graph).new_credential(now=NOW)
        with pytest.raises(ValueError):
            await AppCredentialCollector(graph).new_credential(app_name="a", app_object_id="b", now=NOW)

    @pytest.mark.asyncio
    async def test_dry_run_and_decline(self, graph):
        collector = AppCredentialCollector(graph)
        planned = await collector.new_credential(
            app_object_id="obj-1", display_name="ci", dry_run=True, now=NOW
        )
        assert planned.dry_run is True
        assert planned.app_name == "Payroll"
        assert planned.secret_text == ""
        assert planned.message.startswith("What if: Add client secret 'ci' to Payroll")
        assert await collector.new_credential(app_object_id="obj-1", confirm=lambda d: False, now=NOW) is None
        assert graph.writes() == []

    @pytest.mark.asyncio
    async def test_failure_returns_none(self, graph):
        graph.objects["applications/obj-1/addPassword"] = GraphAPIError(400, "Too many secrets", "x")
        assert await AppCredentialCollector(graph).new_credential(app_object_id="obj-1", now=NOW) is None

    @pytest.mark.asyncio
    async def test_unknown_app_returns_none(self, graph):
        assert await AppCredentialCollector(graph).new_credential(app_name="Nope", now=NOW) is None
        assert graph.writes() == []
