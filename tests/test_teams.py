"""
Tests for the teams and terms of use collectors.
"""

import pytest

from m365_toolkit.collectors.agreements import AGREEMENTS_ENDPOINT, AgreementsCollector
from m365_toolkit.collectors.base import FetchAborted
from m365_toolkit.collectors.teams import TeamsCollector
from m365_toolkit.graph.client import GraphAPIError

from conftest import FakeGraph


@pytest.fixture
def graph():
    return FakeGraph(pages={
        "teams": [
            {"id": "t2", "displayName": "sales", "visibility": "private"},
            {"id": "t1", "displayName": "Engineering", "description": "Build things", "visibility": "public"},
            {"id": "t3", "displayName": "Legal"},
        ],
        "groups/t1/owners": [
            {"id": "u1", "displayName": "Alice Admin", "userPrincipalName": "alice@contoso.com"},
            {"id": "sp9", "displayName": "Provisioning Bot"},
        ],
        "groups/t2/owners": [],
        "groups/t3/owners": GraphAPIError(403, "Forbidden", "x"),
    })


class TestTeams:
    """Teams with their owners."""

    @pytest.mark.asyncio
    async def test_sorted_case_insensitively(self, graph):
        rows = await TeamsCollector(graph).get_teams()
        assert [r.display_name for r in rows] == ["Engineering", "Legal", "sales"]

    @pytest.mark.asyncio
    async def test_owner_labels(self, graph):
        rows = {r.id: r for r in await TeamsCollector(graph).get_teams()}
        assert rows["t1"].owners == ["alice@contoso.com", "Provisioning Bot"]
        assert rows["t1"].owner_count == 2
        assert rows["t2"].owners == []

    @pytest.mark.asyncio
    async def test_owner_failure_only_empties_that_team(self, graph):
        rows = {r.id: r for r in await TeamsCollector(graph).get_teams()}
        assert rows["t3"].owners == []
        assert rows["t1"].owner_count == 2

    @pytest.mark.asyncio
    async def test_without_owners(self, graph):
        rows = await TeamsCollector(graph).get_teams(include_owners=False)
        assert len(rows) == 3
        assert not any(call[1].endswith("/owners") for call in graph.calls)

    @pytest.mark.asyncio
    async def test_team_list_failure_aborts(self):
        with pytest.raises(FetchAborted):
            await TeamsCollector(FakeGraph()).get_teams()


class TestAgreements:
    """Terms of use agreements."""

    @pytest.mark.asyncio
    async def test_agreement_rows(self):
        graph = FakeGraph(pages={AGREEMENTS_ENDPOINT: [
            {
                "id": "ag1",
                "displayName": "Acceptable Use",
                "isViewingBeforeAcceptanceRequired": True,
                "isPerDeviceAcceptanceRequired": False,
                "userReacceptRequiredFrequency": "P90D",
                "termsExpiration": {"startDateTime": "2024-01-01T00:00:00Z", "frequency": "P365D"},
            },
            {"id": "ag2"},
        ]})
        rows = await AgreementsCollector(graph).get_agreements()

        first, second = rows
        assert first.display_name == "Acceptable Use"
        assert first.is_viewing_before_acceptance_required is True
        assert first.terms_expiration_start.year == 2024
        assert first.terms_expiration_frequency == "P365D"
        assert second.display_name == "ag2"
        assert second.terms_expiration_start is None
