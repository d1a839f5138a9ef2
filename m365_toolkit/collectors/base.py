"""
Base collector class — Shared fetch layer for all data collectors.

Multi-source operations describe their queries as FetchRequest objects and
hand them to fetch_all(), which runs every request in turn, records each
failure, and refuses to return partial data.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config import CollectionConfig, ToolkitError
from ..graph.client import GraphClient

logger = logging.getLogger("m365_toolkit.collectors")


class FetchAborted(ToolkitError):
    """Raised when one or more sources of a multi-source fetch failed."""

    def __init__(self, collector_name: str, errors: list[str]):
        self.collector_name = collector_name
        self.errors = errors
        super().__init__(
            f"[{collector_name}] {len(errors)} request(s) failed; operation aborted: "
            + "; ".join(errors)
        )


@dataclass
class FetchRequest:
    """One paginated query against a single entity collection."""
    key: str                                           # Name of the result set
    endpoint: str
    select: list[str] = field(default_factory=list)    # Narrow property set ($select)
    params: dict[str, str] = field(default_factory=dict)
    beta: bool = False
    skip_top: bool = False                             # Endpoint rejects $top


class CollectorResult:
    """Standardized bookkeeping for one collector operation."""

    def __init__(self, collector_name: str):
        self.collector_name = collector_name
        self.data: dict[str, Any] = {}
        self.metadata: dict[str, Any] = {
            "collector": collector_name,
            "started_at": time.time(),
            "completed_at": None,
            "items_collected": 0,
            "errors": [],
            "warnings": [],
            "endpoints_queried": 0,
        }

    @property
    def errors(self) -> list[str]:
        return self.metadata["errors"]

    @property
    def warnings(self) -> list[str]:
        return self.metadata["warnings"]

    def add_data(self, key: str, value: Any):
        self.data[key] = value
        if isinstance(value, list):
            self.metadata["items_collected"] += len(value)
        elif isinstance(value, dict):
            self.metadata["items_collected"] += 1

    def add_error(self, error: str):
        self.metadata["errors"].append(error)
        logger.warning(f"[{self.collector_name}] {error}")

    def add_warning(self, warning: str):
        self.metadata["warnings"].append(warning)
        logger.warning(f"[{self.collector_name}] {warning}")

    def complete(self):
        self.metadata["completed_at"] = time.time()
        duration = round(self.metadata["completed_at"] - self.metadata["started_at"], 2)
        self.metadata["duration_seconds"] = duration
        logger.info(
            f"[{self.collector_name}] Completed in {duration}s — "
            f"{self.metadata['items_collected']} items"
        )


class BaseCollector:
    """
    Base class for all collectors.

    The base class provides:
      - The sequential multi-source fetch with aggregate failure
      - Safe single-call wrappers that record errors without raising
    """

    name: str = "base"
    description: str = "Base collector"

    def __init__(self, graph: GraphClient, config: Optional[CollectionConfig] = None):
        self.graph = graph
        self.config = config or CollectionConfig()

    def new_result(self) -> CollectorResult:
        logger.info(f"[{self.name}] Starting collection...")
        return CollectorResult(self.name)

    async def fetch_all(
        self,
        requests: list[FetchRequest],
        result: Optional[CollectorResult] = None,
    ) -> dict[str, list[dict]]:
        """
        Run every request in order. A failed request is recorded and the
        remaining ones still run; afterwards any error recorded on the
        result, including ones from earlier calls, aborts the whole
        operation with FetchAborted.
        """
        result = result or self.new_result()
        fetched: dict[str, list[dict]] = {}

        for request in requests:
            items = await self.safe_get_all(
                request.endpoint,
                result,
                params=request.params or None,
                beta=request.beta,
                select=request.select or None,
                skip_top=request.skip_top,
            )
            if items is not None:
                fetched[request.key] = items
                result.add_data(request.key, items)

        if result.errors:
            raise FetchAborted(self.name, list(result.errors))
        return fetched

    async def safe_get(self, endpoint: str, result: CollectorResult, **kwargs) -> Optional[dict]:
        """Execute a GET and record the error instead of raising."""
        try:
            data = await self.graph.get(endpoint, **kwargs)
            result.metadata["endpoints_queried"] += 1
            return data
        except Exception as e:
            result.add_error(f"Failed to query {endpoint}: {e}")
            return None

    async def safe_get_all(self, endpoint: str, result: CollectorResult, **kwargs) -> Optional[list]:
        """Get all pages and record the error instead of raising."""
        try:
            data = await self.graph.get_all_pages(endpoint, **kwargs)
            result.metadata["endpoints_queried"] += 1
            return data
        except Exception as e:
            result.add_error(f"Failed to paginate {endpoint}: {e}")
            return None
