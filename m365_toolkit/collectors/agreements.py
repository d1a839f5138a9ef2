"""
Terms of Use Collector
"""

from __future__ import annotations

import logging

from ..models import AgreementRow, parse_datetime
from .base import BaseCollector, FetchRequest

logger = logging.getLogger("m365_toolkit.collectors.agreements")

AGREEMENTS_ENDPOINT = "identityGovernance/termsOfUse/agreements"
AGREEMENT_FIELDS = [
    "id", "displayName", "isViewingBeforeAcceptanceRequired",
    "isPerDeviceAcceptanceRequired", "userReacceptRequiredFrequency", "termsExpiration",
]


class AgreementsCollector(BaseCollector):
    name = "agreements"
    description = "Terms of use agreements"

    async def get_agreements(self) -> list[AgreementRow]:
        fetched = await self.fetch_all([
            FetchRequest("agreements", AGREEMENTS_ENDPOINT, select=AGREEMENT_FIELDS, skip_top=True)
        ])
        rows = []
        for raw in fetched["agreements"]:
            expiration = raw.get("termsExpiration") or {}
            rows.append(AgreementRow(
                id=raw.get("id", ""),
                display_name=raw.get("displayName") or raw.get("id", ""),
                is_viewing_before_acceptance_required=raw.get("isViewingBeforeAcceptanceRequired"),
                is_per_device_acceptance_required=raw.get("isPerDeviceAcceptanceRequired"),
                user_reaccept_required_frequency=raw.get("userReacceptRequiredFrequency"),
                terms_expiration_start=parse_datetime(expiration.get("startDateTime")),
                terms_expiration_frequency=expiration.get("frequency"),
            ))
        return rows
