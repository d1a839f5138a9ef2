"""
Application Credential Collector
Enumerates client secrets and certificates of app registrations, and adds
or removes them. Every mutation goes through a confirmation callback and
supports a dry run that reports the intended change without making it.
"""

from __future__ import annotations

import base64
import binascii
import codecs
import logging
from collections import OrderedDict
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..config import ToolkitError
from ..models import (
    AppCredential,
    CredentialRemovalResult,
    CredentialType,
    NewCredentialResult,
    RemovalStatus,
    like,
    parse_datetime,
)
from .base import BaseCollector, CollectorResult, FetchRequest

logger = logging.getLogger("m365_toolkit.collectors.credentials")

APPLICATION_FIELDS = ["id", "appId", "displayName", "passwordCredentials", "keyCredentials"]

# UTF-32 LE must be tested before UTF-16 LE (its BOM starts with FF FE)
_BOMS = [
    (codecs.BOM_UTF32_LE, "utf-32-le"),
    (codecs.BOM_UTF32_BE, "utf-32-be"),
    (codecs.BOM_UTF8, "utf-8"),
    (codecs.BOM_UTF16_LE, "utf-16-le"),
    (codecs.BOM_UTF16_BE, "utf-16-be"),
]

ConfirmCallback = Callable[[str], bool]


def decode_key_identifier(raw: bytes) -> Optional[str]:
    """
    Decode a customKeyIdentifier byte string into text.

    A BOM decides the encoding; without one, a buffer whose every odd byte
    is zero is read as UTF-16 LE, anything else as UTF-8.
    """
    if not raw:
        return None
    for bom, encoding in _BOMS:
        if raw.startswith(bom):
            text = raw[len(bom):].decode(encoding, errors="replace")
            break
    else:
        if len(raw) >= 2 and len(raw) % 2 == 0 and not any(raw[1::2]):
            text = raw.decode("utf-16-le", errors="replace")
        else:
            text = raw.decode("utf-8", errors="replace")
    text = text.strip("\x00").strip()
    return text or None


def credential_display_name(credential: dict) -> Optional[str]:
    """displayName, else the decoded customKeyIdentifier, else None."""
    if credential.get("displayName"):
        return credential["displayName"]
    identifier = credential.get("customKeyIdentifier")
    if not identifier:
        return None
    try:
        raw = base64.b64decode(identifier, validate=True)
    except (binascii.Error, ValueError):
        logger.debug(f"customKeyIdentifier of {credential.get('keyId')} is not base64")
        return None
    return decode_key_identifier(raw)


def days_until(end: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days from now to end, truncated toward zero; negative once past."""
    if end is None:
        return None
    return int((end - now) / timedelta(days=1))


def build_credential(
    app: dict,
    credential: dict,
    credential_type: CredentialType,
    now: datetime,
) -> AppCredential:
    end = parse_datetime(credential.get("endDateTime"))
    return AppCredential(
        app_object_id=app.get("id", ""),
        app_id=app.get("appId"),
        app_name=app.get("displayName") or app.get("id", ""),
        credential_type=credential_type,
        key_id=credential.get("keyId", ""),
        display_name=credential_display_name(credential),
        start=parse_datetime(credential.get("startDateTime")),
        end=end,
        expired=end is not None and end < now,
        days_to_expire=days_until(end, now),
        hint=credential.get("hint"),
        key_type=credential.get("type"),
        key_usage=credential.get("usage"),
    )


def filter_credentials(
    credentials: list[AppCredential],
    credential_name: Optional[str] = None,
    less_than_days: Optional[int] = None,
    greater_than_days: Optional[int] = None,
    expired_only: bool = False,
) -> list[AppCredential]:
    """Apply every supplied filter; all of them must hold."""
    selected = []
    for cred in credentials:
        if credential_name and not like(cred.display_name, credential_name):
            continue
        if less_than_days is not None and (
            cred.days_to_expire is None or cred.days_to_expire >= less_than_days
        ):
            continue
        if greater_than_days is not None and (
            cred.days_to_expire is None or cred.days_to_expire <= greater_than_days
        ):
            continue
        if expired_only and not cred.expired:
            continue
        selected.append(cred)
    return selected


def _odata_quote(value: str) -> str:
    return value.replace("'", "''")


class AppCredentialCollector(BaseCollector):
    name = "app_credentials"
    description = "App registration client secrets and certificates"

    async def _list_applications(
        self,
        app_name: Optional[str],
        result: CollectorResult,
    ) -> list[dict]:
        params = {}
        if app_name:
            params["$filter"] = f"displayName eq '{_odata_quote(app_name)}'"
        fetched = await self.fetch_all(
            [FetchRequest("applications", "applications", select=APPLICATION_FIELDS, params=params)],
            result,
        )
        return fetched["applications"]

    async def get_credentials(
        self,
        app_name: Optional[str] = None,
        credential_name: Optional[str] = None,
        less_than_days: Optional[int] = None,
        greater_than_days: Optional[int] = None,
        expired_only: bool = False,
        now: Optional[datetime] = None,
    ) -> list[AppCredential]:
        """One record per password and key credential, after filtering."""
        now = now or datetime.now(timezone.utc)
        result = self.new_result()
        apps = await self._list_applications(app_name, result)
        if app_name and not apps:
            result.add_warning(f"No application named '{app_name}'")
            return []

        credentials = []
        for app in apps:
            for cred in app.get("passwordCredentials") or []:
                credentials.append(build_credential(app, cred, CredentialType.PASSWORD, now))
            for cred in app.get("keyCredentials") or []:
                credentials.append(build_credential(app, cred, CredentialType.CERTIFICATE, now))

        selected = filter_credentials(
            credentials,
            credential_name=credential_name,
            less_than_days=less_than_days,
            greater_than_days=greater_than_days,
            expired_only=expired_only,
        )
        result.add_data("credentials", selected)
        result.complete()
        return selected

    # ── Creation ────────────────────────────────────────────────────────────

    async def new_credential(
        self,
        app_name: Optional[str] = None,
        app_object_id: Optional[str] = None,
        display_name: Optional[str] = None,
        valid_days: Optional[int] = None,
        dry_run: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        now: Optional[datetime] = None,
    ) -> Optional[NewCredentialResult]:
        """
        Add a client secret to one application. Returns the new secret
        (shown only once by Graph), a "What if" record with no secret on a
        dry run, or None on failure or decline.
        """
        if bool(app_name) == bool(app_object_id):
            raise ValueError("Specify exactly one of app_name or app_object_id.")

        now = now or datetime.now(timezone.utc)
        valid_days = valid_days if valid_days is not None else self.config.credential_valid_days
        result = self.new_result()

        if app_object_id:
            app = await self.safe_get(
                f"applications/{app_object_id}",
                result,
                params={"$select": "id,appId,displayName"},
            )
            apps = [app] if app else []
        else:
            apps = await self._list_applications(app_name, result)

        if len(apps) != 1:
            result.add_warning(
                f"Expected one application for '{app_name or app_object_id}', found {len(apps)}"
            )
            return None

        app = apps[0]
        app_label = app.get("displayName") or app.get("id")
        end = now + timedelta(days=valid_days)
        description = (
            f"Add client secret '{display_name or ''}' to {app_label} "
            f"(expires {end:%Y-%m-%d})"
        )

        if dry_run:
            logger.info(f"[dry-run] {description}")
            result.complete()
            return NewCredentialResult(
                app_object_id=app["id"],
                app_id=app.get("appId"),
                app_name=app_label,
                key_id="",
                display_name=display_name,
                secret_text="",
                end=end,
                dry_run=True,
                message=f"What if: {description}",
            )
        if confirm is not None and not confirm(description):
            result.add_warning(f"Declined: {description}")
            return None

        body = {
            "passwordCredential": {
                "displayName": display_name,
                "endDateTime": end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            }
        }
        try:
            created = await self.graph.post(f"applications/{app['id']}/addPassword", body)
        except Exception as e:
            result.add_warning(f"Failed to add client secret to {app_label}: {e}")
            return None

        logger.info(f"Added client secret {created.get('keyId')} to {app_label}")
        result.complete()
        return NewCredentialResult(
            app_object_id=app["id"],
            app_id=app.get("appId"),
            app_name=app_label,
            key_id=created.get("keyId", ""),
            display_name=created.get("displayName"),
            secret_text=created.get("secretText", ""),
            hint=created.get("hint"),
            start=parse_datetime(created.get("startDateTime")),
            end=parse_datetime(created.get("endDateTime")),
        )

    # ── Removal ─────────────────────────────────────────────────────────────

    async def remove_credentials(
        self,
        app_name: Optional[str] = None,
        credential_name: Optional[str] = None,
        key_id: Optional[str] = None,
        less_than_days: Optional[int] = None,
        greater_than_days: Optional[int] = None,
        expired_only: bool = False,
        dry_run: bool = False,
        confirm: Optional[ConfirmCallback] = None,
        now: Optional[datetime] = None,
    ) -> list[CredentialRemovalResult]:
        """
        Remove every credential selected by the filters, one at a time.
        Each attempt yields a result record; one failure never stops the rest.
        """
        if not any([
            app_name, credential_name, key_id, expired_only,
            less_than_days is not None, greater_than_days is not None,
        ]):
            raise ValueError("Refusing to remove credentials without at least one filter.")

        candidates = await self.get_credentials(
            app_name=app_name,
            credential_name=credential_name,
            less_than_days=less_than_days,
            greater_than_days=greater_than_days,
            expired_only=expired_only,
            now=now,
        )
        if key_id:
            candidates = [c for c in candidates if c.key_id == key_id]
        if not candidates:
            logger.warning("No credentials matched the removal filters")
            return []

        by_app: OrderedDict[str, list[AppCredential]] = OrderedDict()
        for cred in candidates:
            by_app.setdefault(cred.app_object_id, []).append(cred)

        results = []
        for app_object_id, creds in by_app.items():
            logger.info(f"{creds[0].app_name}: {len(creds)} credential(s) selected for removal")
            for cred in creds:
                results.append(await self._remove_one(cred, dry_run, confirm))
        return results

    async def _remove_one(
        self,
        cred: AppCredential,
        dry_run: bool,
        confirm: Optional[ConfirmCallback],
    ) -> CredentialRemovalResult:
        label = cred.display_name or cred.key_id
        description = (
            f"Remove {cred.credential_type.value.lower()} credential '{label}' "
            f"({cred.key_id}) from {cred.app_name}"
        )

        if dry_run:
            logger.info(f"[dry-run] {description}")
            return _removal_result(cred, RemovalStatus.DRY_RUN, f"What if: {description}")
        if confirm is not None and not confirm(description):
            return _removal_result(cred, RemovalStatus.SKIPPED, f"Declined: {description}")

        try:
            if cred.credential_type is CredentialType.PASSWORD:
                await self.graph.post(
                    f"applications/{cred.app_object_id}/removePassword",
                    {"keyId": cred.key_id},
                )
            else:
                await self._remove_key_credential(cred)
        except Exception as e:
            logger.warning(f"Failed: {description}: {e}")
            return _removal_result(cred, RemovalStatus.FAILED, f"{description} failed: {e}")

        logger.info(f"Removed {cred.key_id} from {cred.app_name}")
        return _removal_result(cred, RemovalStatus.REMOVED, f"{description} succeeded")

    async def _remove_key_credential(self, cred: AppCredential):
        """Rewrite keyCredentials without the removed key."""
        app = await self.graph.get(
            f"applications/{cred.app_object_id}",
            params={"$select": "keyCredentials"},
        )
        current = app.get("keyCredentials") or []
        remaining = [k for k in current if k.get("keyId") != cred.key_id]
        if len(remaining) == len(current):
            raise ToolkitError(f"Key credential {cred.key_id} is no longer present")
        await self.graph.patch(
            f"applications/{cred.app_object_id}",
            {"keyCredentials": remaining},
        )


def _removal_result(
    cred: AppCredential,
    status: RemovalStatus,
    message: str,
) -> CredentialRemovalResult:
    return CredentialRemovalResult(
        status=status,
        app_object_id=cred.app_object_id,
        app_id=cred.app_id,
        app_name=cred.app_name,
        key_id=cred.key_id,
        credential_name=cred.display_name,
        credential_type=cred.credential_type,
        message=message,
    )
