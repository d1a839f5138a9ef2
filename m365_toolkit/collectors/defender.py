"""
Defender Collector
Secure score with per-control breakdown, secure score control profiles,
and Defender for Identity sensors plus their deployment key / package.
"""

from __future__ import annotations

import logging
from typing import Optional

from ..models import (
    ControlScoreRow,
    IdentitySensor,
    SecureScoreControlProfile,
    SecureScoreRow,
    SensorDeploymentInfo,
    parse_datetime,
)
from .base import BaseCollector, FetchAborted, FetchRequest

logger = logging.getLogger("m365_toolkit.collectors.defender")

SECURE_SCORES_ENDPOINT = "security/secureScores"
CONTROL_PROFILES_ENDPOINT = "security/secureScoreControlProfiles"
SENSORS_ENDPOINT = "security/identities/sensors"
DEPLOYMENT_KEY_ENDPOINT = f"{SENSORS_ENDPOINT}/microsoft.graph.security.getDeploymentAccessKey()"
DEPLOYMENT_PACKAGE_ENDPOINT = f"{SENSORS_ENDPOINT}/microsoft.graph.security.getDeploymentPackageUri()"

PROFILE_FIELDS = [
    "id", "title", "controlCategory", "maxScore", "rank", "tier", "userImpact",
    "implementationCost", "service", "deprecated", "actionUrl", "threats",
]
SENSOR_FIELDS = [
    "id", "displayName", "domainName", "sensorType", "deploymentStatus",
    "healthStatus", "version", "createdDateTime",
]


def _float(value) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def control_profile(raw: dict) -> SecureScoreControlProfile:
    return SecureScoreControlProfile(
        id=raw.get("id", ""),
        title=raw.get("title"),
        control_category=raw.get("controlCategory"),
        max_score=_float(raw.get("maxScore")),
        rank=raw.get("rank"),
        tier=raw.get("tier"),
        user_impact=raw.get("userImpact"),
        implementation_cost=raw.get("implementationCost"),
        service=raw.get("service"),
        deprecated=raw.get("deprecated"),
        action_url=raw.get("actionUrl"),
        threats=list(raw.get("threats") or []),
    )


def control_score(raw: dict, profile: Optional[SecureScoreControlProfile]) -> ControlScoreRow:
    score = _float(raw.get("score")) or 0.0
    max_score = profile.max_score if profile else None
    return ControlScoreRow(
        control_name=raw.get("controlName", ""),
        title=profile.title if profile else None,
        category=raw.get("controlCategory") or (profile.control_category if profile else None),
        score=score,
        max_score=max_score,
        points_lost=round(max_score - score, 2) if max_score is not None else None,
        implementation_status=raw.get("implementationStatus"),
        user_impact=profile.user_impact if profile else None,
        implementation_cost=profile.implementation_cost if profile else None,
        action_url=profile.action_url if profile else None,
    )


class DefenderCollector(BaseCollector):
    name = "defender"
    description = "Secure score and Defender for Identity sensors"

    async def get_secure_score(self) -> Optional[SecureScoreRow]:
        """
        The latest secure score, each control joined with its profile by
        control name. Controls are ordered by points lost, largest first.
        """
        result = self.new_result()
        data = await self.safe_get(SECURE_SCORES_ENDPOINT, result, params={"$top": "1"})
        # A failed score read is already on result.errors and aborts here too
        fetched = await self.fetch_all(
            [FetchRequest("control_profiles", CONTROL_PROFILES_ENDPOINT, select=PROFILE_FIELDS)],
            result,
        )

        scores = data.get("value", [])
        if not scores:
            result.add_warning("No secure score has been calculated for this tenant")
            return None
        latest = max(scores, key=lambda s: s.get("createdDateTime") or "")

        profiles = {p.id: p for p in map(control_profile, fetched["control_profiles"])}
        controls = [control_score(c, profiles.get(c.get("controlName"))) for c in latest.get("controlScores") or []]
        controls.sort(key=lambda c: c.points_lost if c.points_lost is not None else -1.0, reverse=True)

        current = _float(latest.get("currentScore")) or 0.0
        maximum = _float(latest.get("maxScore")) or 0.0
        row = SecureScoreRow(
            created=parse_datetime(latest.get("createdDateTime")),
            current_score=current,
            max_score=maximum,
            percentage=round(current / maximum * 100, 2) if maximum else 0.0,
            licensed_user_count=latest.get("licensedUserCount"),
            active_user_count=latest.get("activeUserCount"),
            enabled_services=list(latest.get("enabledServices") or []),
            controls=controls,
        )
        result.add_data("secure_score", row)
        result.complete()
        return row

    async def get_secure_score_controls(self) -> list[SecureScoreControlProfile]:
        fetched = await self.fetch_all(
            [FetchRequest("control_profiles", CONTROL_PROFILES_ENDPOINT, select=PROFILE_FIELDS)]
        )
        profiles = [control_profile(p) for p in fetched["control_profiles"]]
        profiles.sort(key=lambda p: (p.rank is None, p.rank or 0))
        return profiles

    async def get_identity_sensors(self) -> list[IdentitySensor]:
        """Defender for Identity sensors (beta)."""
        fetched = await self.fetch_all(
            [FetchRequest("sensors", SENSORS_ENDPOINT, select=SENSOR_FIELDS, beta=True, skip_top=True)]
        )
        return [
            IdentitySensor(
                id=s.get("id", ""),
                display_name=s.get("displayName"),
                domain_name=s.get("domainName"),
                sensor_type=s.get("sensorType"),
                deployment_status=s.get("deploymentStatus"),
                health_status=s.get("healthStatus"),
                version=s.get("version"),
                created=parse_datetime(s.get("createdDateTime")),
            )
            for s in fetched["sensors"]
        ]

    async def get_sensor_deployment(self) -> SensorDeploymentInfo:
        """Workspace access key and sensor installer download link (beta)."""
        result = self.new_result()
        key = await self.safe_get(DEPLOYMENT_KEY_ENDPOINT, result, beta=True)
        package = await self.safe_get(DEPLOYMENT_PACKAGE_ENDPOINT, result, beta=True)
        if result.errors:
            raise FetchAborted(self.name, list(result.errors))

        info = SensorDeploymentInfo(
            access_key=key.get("deploymentAccessKey"),
            package_uri=package.get("downloadUrl"),
            package_uri_expiry=parse_datetime(package.get("expirationDateTime")),
        )
        result.complete()
        return info
