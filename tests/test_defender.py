"""
Tests for secure score and Defender for Identity sensor collection.
"""

import pytest

from m365_toolkit.collectors.base import FetchAborted
from m365_toolkit.collectors.defender import (
    CONTROL_PROFILES_ENDPOINT,
    DEPLOYMENT_KEY_ENDPOINT,
    DEPLOYMENT_PACKAGE_ENDPOINT,
    SECURE_SCORES_ENDPOINT,
    SENSORS_ENDPOINT,
    DefenderCollector,
)
from m365_toolkit.graph.client import GraphAPIError

from conftest import FakeGraph

PROFILES = [
    {"id": "MFARegistrationV2", "title": "Ensure all users can complete MFA", "maxScore": 9,
     "rank": 2, "userImpact": "Moderate", "actionUrl": "https://security.microsoft.com/mfa"},
    {"id": "AdminMFAV2", "title": "Require MFA for administrative roles", "maxScore": 10.0, "rank": 1},
    {"id": "SelfServicePasswordReset", "title": "Enable SSPR", "maxScore": 1, "rank": None},
]

SCORES = {
    "value": [
        {
            "createdDateTime": "2024-05-30T00:00:00Z",
            "currentScore": 10,
            "maxScore": 40,
            "controlScores": [],
        },
        {
            "createdDateTime": "2024-05-31T00:00:00Z",
            "currentScore": 15.5,
            "maxScore": 40,
            "licensedUserCount": 25,
            "enabledServices": ["HasExchange", "HasSharePoint"],
            "controlScores": [
                {"controlName": "AdminMFAV2", "controlCategory": "Identity", "score": 10},
                {"controlName": "MFARegistrationV2", "controlCategory": "Identity", "score": 4.5},
                {"controlName": "RetiredControl", "score": 1},
                {"controlName": "SelfServicePasswordReset", "score": "0"},
            ],
        },
    ]
}


@pytest.fixture
def graph():
    return FakeGraph(
        pages={
            CONTROL_PROFILES_ENDPOINT: PROFILES,
            SENSORS_ENDPOINT: [
                {"id": "s1", "displayName": "DC01", "domainName": "contoso.local",
                 "sensorType": "domainControllerIntegrated", "healthStatus": "healthy",
                 "createdDateTime": "2024-01-02T03:04:05Z"},
            ],
        },
        objects={
            SECURE_SCORES_ENDPOINT: SCORES,
            DEPLOYMENT_KEY_ENDPOINT: {"deploymentAccessKey": "abc123=="},
            DEPLOYMENT_PACKAGE_ENDPOINT: {
                "downloadUrl": "https://download.example/sensor.zip",
                "expirationDateTime": "2024-06-01T00:00:00Z",
            },
        },
    )


class TestSecureScore:
    """Latest score joined with control profiles."""

    @pytest.mark.asyncio
    async def test_latest_snapshot(self, graph):
        score = await DefenderCollector(graph).get_secure_score()

        assert score.created.day == 31
        assert score.current_score == 15.5
        assert score.percentage == 38.75
        assert score.licensed_user_count == 25
        assert graph.params_for(SECURE_SCORES_ENDPOINT) == {"$top": "1"}

    @pytest.mark.asyncio
    async def test_controls_by_points_lost(self, graph):
        score = await DefenderCollector(graph).get_secure_score()
        names = [c.control_name for c in score.controls]

        # 4.5 lost, 1 lost, 0 lost, then the control without a profile
        assert names == ["MFARegistrationV2", "SelfServicePasswordReset", "AdminMFAV2", "RetiredControl"]
        mfa = score.controls[0]
        assert mfa.points_lost == 4.5
        assert mfa.title == "Ensure all users can complete MFA"
        assert mfa.action_url.endswith("/mfa")
        assert score.controls[-1].max_score is None

    @pytest.mark.asyncio
    async def test_no_score_yet(self, graph):
        graph.objects[SECURE_SCORES_ENDPOINT] = {"value": []}
        assert await DefenderCollector(graph).get_secure_score() is None

    @pytest.mark.asyncio
    async def test_score_failure_aborts(self, graph):
        graph.objects[SECURE_SCORES_ENDPOINT] = GraphAPIError(403, "Forbidden", "x")
        with pytest.raises(FetchAborted):
            await DefenderCollector(graph).get_secure_score()

    @pytest.mark.asyncio
    async def test_profiles_failure_aborts(self, graph):
        graph.pages[CONTROL_PROFILES_ENDPOINT] = GraphAPIError(500, "Server error", "x")
        with pytest.raises(FetchAborted):
            await DefenderCollector(graph).get_secure_score()

    @pytest.mark.asyncio
    async def test_both_failures_reported(self, graph):
        graph.objects[SECURE_SCORES_ENDPOINT] = GraphAPIError(403, "Forbidden", "x")
        graph.pages[CONTROL_PROFILES_ENDPOINT] = GraphAPIError(403, "Forbidden", "x")

        with pytest.raises(FetchAborted) as exc:
            await DefenderCollector(graph).get_secure_score()

        assert len(exc.value.errors) == 2
        assert SECURE_SCORES_ENDPOINT in exc.value.errors[0]
        assert CONTROL_PROFILES_ENDPOINT in exc.value.errors[1]

    @pytest.mark.asyncio
    async def test_control_profiles_ranked(self, graph):
        profiles = await DefenderCollector(graph).get_secure_score_controls()
        assert [p.id for p in profiles] == ["AdminMFAV2", "MFARegistrationV2", "SelfServicePasswordReset"]
        assert profiles[1].max_score == 9.0


class TestIdentitySensors:
    """Defender for Identity sensors and deployment material."""

    @pytest.mark.asyncio
    async def test_sensors(self, graph):
        sensors = await DefenderCollector(graph).get_identity_sensors()
        assert len(sensors) == 1
        assert sensors[0].display_name == "DC01"
        assert sensors[0].health_status == "healthy"
        assert sensors[0].created.year == 2024

    @pytest.mark.asyncio
    async def test_deployment_info(self, graph):
        info = await DefenderCollector(graph).get_sensor_deployment()
        assert info.access_key == "abc123=="
        assert info.package_uri == "https://download.example/sensor.zip"
        assert info.package_uri_expiry.month == 6

    @pytest.mark.asyncio
    async def test_deployment_failure_aborts(self, graph):
        graph.objects[DEPLOYMENT_PACKAGE_ENDPOINT] = GraphAPIError(404, "Not found", "x")
        with pytest.raises(FetchAborted) as exc:
            await DefenderCollector(graph).get_sensor_deployment()
        assert len(exc.value.errors) == 1
