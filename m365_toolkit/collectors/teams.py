"""
Teams Collector
Lists every team with its owners.
"""

from __future__ import annotations

import logging

from ..models import TeamRow
from .base import BaseCollector, FetchRequest

logger = logging.getLogger("m365_toolkit.collectors.teams")

TEAM_FIELDS = ["id", "displayName", "description", "visibility"]
OWNER_FIELDS = ["id", "displayName", "userPrincipalName"]


class TeamsCollector(BaseCollector):
    name = "teams"
    description = "Teams and team owners"

    async def get_teams(self, include_owners: bool = True) -> list[TeamRow]:
        result = self.new_result()
        fetched = await self.fetch_all([FetchRequest("teams", "teams", select=TEAM_FIELDS)], result)

        rows = []
        for team in fetched["teams"]:
            owners: list[str] = []
            if include_owners:
                raw_owners = await self.safe_get_all(
                    f"groups/{team['id']}/owners", result, select=OWNER_FIELDS
                )
                # A failed owner lookup is recorded but only empties this team's owners
                owners = [
                    o.get("userPrincipalName") or o.get("displayName") or o.get("id", "")
                    for o in raw_owners or []
                ]
            rows.append(TeamRow(
                id=team["id"],
                display_name=team.get("displayName") or team["id"],
                description=team.get("description"),
                visibility=team.get("visibility"),
                owners=owners,
                owner_count=len(owners),
            ))

        rows.sort(key=lambda r: r.display_name.lower())
        result.add_data("team_rows", rows)
        result.complete()
        return rows
