"""
Safety Guardian — Restricts tenant writes to application credential endpoints.
Validates all HTTP methods, blocks anything outside the allow-list, and
keeps an audit trail of every mutation and violation.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Optional

from ..config import ToolkitError

logger = logging.getLogger("m365_toolkit.safety")

# ─── HTTP Methods ───────────────────────────────────────────────────────────

READ_METHODS = {"GET", "HEAD", "OPTIONS"}
WRITE_METHODS = {"POST", "PUT", "PATCH", "DELETE"}

# The only mutations the toolkit performs: client secret add/remove and
# key credential replacement on an application object.
ALLOWED_WRITE_ENDPOINTS = [
    ("POST", re.compile(r"/applications/[^/?]+/addPassword$")),
    ("POST", re.compile(r"/applications/[^/?]+/removePassword$")),
    ("PATCH", re.compile(r"/applications/[^/?]+$")),
]

# PATCH on an application may only touch these properties
PATCHABLE_APPLICATION_FIELDS = {"keyCredentials"}


class SafetyViolation(ToolkitError):
    """Raised when a request falls outside the permitted write surface."""
    pass


class SafetyGuardian:
    """
    Validates every outbound HTTP request.

    Reads are always permitted. Writes require the guardian to be created
    with allow_writes=True and must match ALLOWED_WRITE_ENDPOINTS.
    """

    def __init__(self, allow_writes: bool = False):
        self.allow_writes = allow_writes
        self.violations: list[dict] = []
        self.mutations: list[dict] = []
        self.checks_performed: int = 0
        self.started_at: str = _utc_now()

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """
        Validate a request.
        Returns True if permitted, raises SafetyViolation if not.
        """
        self.checks_performed += 1
        method_upper = method.upper()
        path = url.split("?", 1)[0]

        if method_upper in READ_METHODS:
            return True

        if method_upper not in WRITE_METHODS:
            self._record_violation(method_upper, url, "Unsupported HTTP method")
            raise SafetyViolation(f"SAFETY VIOLATION: Unsupported method: {method_upper} {url}")

        if not self.allow_writes:
            self._record_violation(method_upper, url, "Writes not enabled for this session")
            raise SafetyViolation(
                f"SAFETY VIOLATION: Write attempted on a read-only session: {method_upper} {url}"
            )

        for allowed_method, pattern in ALLOWED_WRITE_ENDPOINTS:
            if allowed_method == method_upper and pattern.search(path):
                if method_upper == "PATCH":
                    extra = set(body or {}) - PATCHABLE_APPLICATION_FIELDS
                    if extra:
                        self._record_violation(
                            method_upper, url, f"PATCH touches non-credential fields: {sorted(extra)}"
                        )
                        raise SafetyViolation(
                            f"SAFETY VIOLATION: PATCH may only modify keyCredentials: {url}"
                        )
                self._record_mutation(method_upper, url)
                return True

        self._record_violation(method_upper, url, "Endpoint not on the write allow-list")
        raise SafetyViolation(
            f"SAFETY VIOLATION: Write endpoint not permitted: {method_upper} {url}"
        )

    def _record_mutation(self, method: str, url: str):
        self.mutations.append({
            "timestamp": _utc_now(),
            "method": method,
            "url": url,
        })
        logger.warning(f"Tenant write: {method} {url}")

    def _record_violation(self, method: str, url: str, reason: str):
        """Record a safety violation for audit."""
        violation = {
            "timestamp": _utc_now(),
            "method": method,
            "url": url,
            "reason": reason,
        }
        self.violations.append(violation)
        logger.critical(f"SAFETY VIOLATION: {reason} — {method} {url}")

    def get_audit_record(self) -> dict:
        """Return the full safety audit record."""
        return {
            "safety_guardian": {
                "mode": "READ-WRITE" if self.allow_writes else "READ-ONLY",
                "started_at": self.started_at,
                "checks_performed": self.checks_performed,
                "mutations": self.mutations,
                "violations_detected": len(self.violations),
                "violations": self.violations,
                "status": "CLEAN" if not self.violations else "VIOLATIONS_DETECTED",
            }
        }


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
