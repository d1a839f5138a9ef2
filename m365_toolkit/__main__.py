"""
M365 Graph Toolkit — Command line entry point

Usage:
    python -m m365_toolkit roles --role-name "*Admin*" --hide-empty
    python -m m365_toolkit role-history --days 14 --principal "*@contoso.com"
    python -m m365_toolkit app-credentials --less-than-days 30 --format table html
    python -m m365_toolkit remove-app-credentials --expired --dry-run
    python -m m365_toolkit usage-report getOffice365ActiveUserDetail --period D30

Profile management:
    python -m m365_toolkit profile add <name> --tenant-id ... --client-id ...
    python -m m365_toolkit profile list
    python -m m365_toolkit profile remove <name>
    python -m m365_toolkit profile set-default <name>

Only add-app-credential / remove-app-credentials write to the tenant, and
only after confirmation unless --yes is given.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from . import __version__
from .auth.authenticator import AuthenticationError, Authenticator
from .collectors import (
    AgreementsCollector,
    AppCredentialCollector,
    DefenderCollector,
    FetchAborted,
    RoleCollector,
    TeamsCollector,
    UsageReportCollector,
)
from .config import AUTH_MODES, USAGE_REPORT_PERIODS, ConfigurationError, ToolkitConfig, ToolkitError
from .graph.client import GraphClient
from .profiles import ProfileStore, TenantProfile, resolve_profile
from .reporting import ReportContext, export_csv, export_html, export_json
from .reporting.context import columns_for, flatten_row
from .safety.guardian import SafetyGuardian

logger = logging.getLogger("m365_toolkit")

OUTPUT_FORMATS = ("table", "json", "csv", "html")
WRITE_COMMANDS = {"new-app-credential", "remove-app-credentials"}

# Columns shown by --format table; file exports carry every field
TABLE_COLUMNS = {
    "roles": ["role_name", "direct_count", "eligible_count", "group_member_count", "total_count"],
    "role-history": ["created", "request_type", "action", "status", "role_name", "principal_name", "requested_by"],
    "app-credentials": ["app_name", "credential_type", "display_name", "end", "days_to_expire", "expired"],
    "new-app-credential": ["app_name", "key_id", "display_name", "end", "secret_text", "message"],
    "remove-app-credentials": ["status", "app_name", "credential_type", "credential_name", "key_id"],
    "secure-score": ["created", "current_score", "max_score", "percentage", "licensed_user_count"],
    "secure-score-controls": ["id", "title", "control_category", "max_score", "rank", "service"],
    "identity-sensors": ["display_name", "domain_name", "sensor_type", "deployment_status", "health_status", "version"],
    "sensor-deployment": ["access_key", "package_uri", "package_uri_expiry"],
    "teams": ["display_name", "visibility", "owner_count", "owners"],
    "agreements": ["display_name", "is_viewing_before_acceptance_required", "user_reaccept_required_frequency"],
}

TITLES = {
    "roles": "Directory Role Membership",
    "role-history": "Role Activation History",
    "app-credentials": "Application Credentials",
    "new-app-credential": "New Application Secret",
    "remove-app-credentials": "Application Credential Removal",
    "secure-score": "Microsoft Secure Score",
    "secure-score-controls": "Secure Score Control Profiles",
    "identity-sensors": "Defender for Identity Sensors",
    "sensor-deployment": "Defender for Identity Sensor Deployment",
    "teams": "Microsoft Teams",
    "agreements": "Terms of Use Agreements",
    "usage-report": "Usage Report",
}

_CELL_WIDTH = 48


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    """Handle `profile add|list|remove|set-default` sub-commands."""
    action = args.profile_action

    if action == "list":
        return _profile_list()
    elif action == "add":
        return _profile_add(args)
    elif action == "remove":
        return _profile_remove(args)
    elif action == "set-default":
        return _profile_set_default(args)
    print("Usage: python -m m365_toolkit profile {add|list|remove|set-default}")
    return 0


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_toolkit profile add <name> --tenant-id <GUID> --client-id <GUID>")
        return 0

    print(f"\n  {'Name':<24s} {'Tenant ID':<38s} {'Client ID':<38s} {'Auth':<12s} {'Default'}")
    print(f"  {'─'*24} {'─'*38} {'─'*38} {'─'*12} {'─'*7}")
    for p in profiles:
        default_marker = "  ✓" if p.name == store.default_profile else ""
        name_col = p.name + (f" ({p.tenant_display_name})" if p.tenant_display_name else "")
        print(f"  {name_col:<24s} {p.tenant_id:<38s} {p.client_id:<38s} {p.auth_mode:<12s}{default_marker}")
    print()
    return 0


def _profile_add(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    name = args.profile_name
    if store.get(name):
        print(f"  Profile '{name}' already exists. It will be overwritten.")

    profile = TenantProfile(
        name=name,
        tenant_id=args.tenant_id,
        client_id=args.client_id,
        auth_mode=args.auth_mode,
        cert_path=args.cert_path or "",
        tenant_display_name=args.display_name or "",
    )
    set_as_default = args.set_default or not store.profiles
    store.add(profile, set_default=set_as_default)
    print(f"  ✅ Profile '{name}' saved.")
    if set_as_default:
        print("  ✅ Set as default profile.")
    return 0


def _profile_remove(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.remove(args.profile_name):
        print(f"  ✅ Profile '{args.profile_name}' removed.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


def _print_permissions() -> int:
    print("\n  Application permissions (grant admin consent on the app registration):\n")
    for permission, purpose in Authenticator.list_required_permissions().items():
        print(f"  {permission:<36s} {purpose}")
    print()
    return 0


def _profile_set_default(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    if store.set_default(args.profile_name):
        print(f"  ✅ Default profile set to '{args.profile_name}'.")
        return 0
    print(f"  ❌ Profile '{args.profile_name}' not found.")
    return 1


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _common_options() -> argparse.ArgumentParser:
    """Connection and output options shared by every Graph sub-command."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", "-p", help="Tenant profile name (see 'profile list')")
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument("--tenant-id", help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", help="Client ID (overrides profile)")
    common.add_argument("--auth-mode", choices=AUTH_MODES, help="Authentication mode (overrides profile)")
    common.add_argument("--cert-path", help="Path to PFX certificate (certificate mode)")
    common.add_argument("--tenant-name", help="Display name for the tenant in reports")
    common.add_argument(
        "--format", "-f",
        nargs="+",
        choices=OUTPUT_FORMATS,
        default=None,
        help="Output formats (default: table)",
    )
    common.add_argument("--output-dir", "-o", type=Path, help="Directory for json/csv/html output")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return common


def _add_credential_filters(parser: argparse.ArgumentParser):
    parser.add_argument("--app-name", help="Exact application display name")
    parser.add_argument("--credential-name", help="Wildcard over credential display names")
    parser.add_argument("--less-than-days", type=int, help="Expires in fewer than N days (includes expired)")
    parser.add_argument("--greater-than-days", type=int, help="Expires in more than N days")
    parser.add_argument("--expired", action="store_true", help="Only expired credentials")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365-toolkit",
        description="Microsoft Graph reporting and app credential toolkit",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    common = _common_options()

    # --- Roles ---
    roles = subparsers.add_parser("roles", parents=[common], help="Directory role membership")
    roles.add_argument("--role-name", help="Wildcard over role display names")
    roles.add_argument("--hide-empty", action="store_true", help="Omit roles with no direct or eligible members")
    roles.add_argument("--no-expand-groups", action="store_true", help="Do not expand role-assignable groups")

    history = subparsers.add_parser("role-history", parents=[common], help="PIM role request history")
    history.add_argument("--days", type=int, help="Look-back window in days (default: 30)")
    history.add_argument("--role-name", help="Wildcard over role display names")
    history.add_argument("--principal", help="Wildcard over UPN or display name")
    history.add_argument("--all-statuses", action="store_true", help="Include pending and failed requests")

    # --- App credentials ---
    creds = subparsers.add_parser("app-credentials", parents=[common], help="List app registration credentials")
    _add_credential_filters(creds)

    new_cred = subparsers.add_parser("new-app-credential", parents=[common], help="Add a client secret")
    target = new_cred.add_mutually_exclusive_group(required=True)
    target.add_argument("--app-name", help="Exact application display name")
    target.add_argument("--app-object-id", help="Application object ID")
    new_cred.add_argument("--display-name", help="Display name of the new secret")
    new_cred.add_argument("--valid-days", type=int, help="Secret lifetime in days (default: 180)")
    new_cred.add_argument("--dry-run", action="store_true", help="Show what would be added")
    new_cred.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    remove = subparsers.add_parser("remove-app-credentials", parents=[common], help="Remove app credentials")
    _add_credential_filters(remove)
    remove.add_argument("--key-id", help="Remove only the credential with this keyId")
    remove.add_argument("--dry-run", action="store_true", help="Report what would be removed")
    remove.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    # --- Defender ---
    subparsers.add_parser("secure-score", parents=[common], help="Latest secure score with controls")
    subparsers.add_parser("secure-score-controls", parents=[common], help="Secure score control profiles")
    subparsers.add_parser("identity-sensors", parents=[common], help="Defender for Identity sensors")
    subparsers.add_parser("sensor-deployment", parents=[common], help="Sensor access key and package URI")

    # --- Teams / agreements / usage ---
    teams = subparsers.add_parser("teams", parents=[common], help="Teams and owners")
    teams.add_argument("--no-owners", action="store_true", help="Skip the per-team owner lookup")
    subparsers.add_parser("agreements", parents=[common], help="Terms of use agreements")

    usage = subparsers.add_parser("usage-report", parents=[common], help="Download a usage report")
    usage.add_argument("report_name", help="Report function, e.g. getOffice365ActiveUserDetail")
    when = usage.add_mutually_exclusive_group(required=True)
    when.add_argument("--period", choices=USAGE_REPORT_PERIODS, help="Reporting period")
    when.add_argument("--date", help="Single day, YYYY-MM-DD")

    subparsers.add_parser("permissions", help="List the Graph application permissions used")

    # --- Profiles ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--auth-mode", choices=AUTH_MODES, default="secret", help="Authentication mode")
    add_p.add_argument("--cert-path", help="Path to PFX certificate (certificate mode)")
    add_p.add_argument("--display-name", help="Friendly tenant display name for reports")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace) -> tuple[ToolkitConfig, Optional[TenantProfile]]:
    """Merge config file, profile, environment and CLI flags (later wins)."""
    config = ToolkitConfig.from_file(args.config) if args.config else ToolkitConfig()

    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise ConfigurationError(
                f"Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not config.auth.tenant_id and not args.tenant_id:
        profile = resolve_profile()
    if profile:
        profile.apply_to(config.auth)

    config = ToolkitConfig.from_env(config)

    if args.tenant_id:
        config.auth.tenant_id = args.tenant_id
    if args.client_id:
        config.auth.client_id = args.client_id
    if args.auth_mode:
        config.auth.mode = args.auth_mode
    if args.cert_path:
        config.auth.certificate_path = args.cert_path
    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.format:
        config.output.formats = list(args.format)
    config.verbose = config.verbose or args.verbose

    config.auth.validate()
    return config, profile


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # Request lines from httpx are noise below debug
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def prompt_confirm(description: str) -> bool:
    answer = input(f"  {description}. Continue? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


CommandResult = tuple[list[Any], dict[str, Any]]
Command = Callable[[GraphClient, argparse.Namespace, ToolkitConfig], Awaitable[CommandResult]]


async def _roles(graph, args, config) -> CommandResult:
    collector = RoleCollector(graph, config.collection)
    rows = await collector.get_roles(
        role_name=args.role_name,
        hide_empty=args.hide_empty,
        expand_groups=not args.no_expand_groups,
    )
    return rows, {"Roles": len(rows), "Principals": sum(r.total_count for r in rows)}


async def _role_history(graph, args, config) -> CommandResult:
    collector = RoleCollector(graph, config.collection)
    rows = await collector.get_role_history(
        days=args.days,
        role_name=args.role_name,
        principal=args.principal,
        include_all_statuses=args.all_statuses,
    )
    return rows, {"Days": args.days or config.collection.history_days}


async def _app_credentials(graph, args, config) -> CommandResult:
    collector = AppCredentialCollector(graph, config.collection)
    rows = await collector.get_credentials(
        app_name=args.app_name,
        credential_name=args.credential_name,
        less_than_days=args.less_than_days,
        greater_than_days=args.greater_than_days,
        expired_only=args.expired,
    )
    return rows, {"Expired": sum(1 for r in rows if r.expired)}


async def _new_app_credential(graph, args, config) -> CommandResult:
    collector = AppCredentialCollector(graph, config.collection)
    created = await collector.new_credential(
        app_name=args.app_name,
        app_object_id=args.app_object_id,
        display_name=args.display_name,
        valid_days=args.valid_days,
        dry_run=args.dry_run,
        confirm=None if args.yes else prompt_confirm,
    )
    if created and not created.dry_run:
        print("\n  ⚠  Store the secret now; it cannot be retrieved again.\n")
    return ([created] if created else []), {}


async def _remove_app_credentials(graph, args, config) -> CommandResult:
    collector = AppCredentialCollector(graph, config.collection)
    rows = await collector.remove_credentials(
        app_name=args.app_name,
        credential_name=args.credential_name,
        key_id=args.key_id,
        less_than_days=args.less_than_days,
        greater_than_days=args.greater_than_days,
        expired_only=args.expired,
        dry_run=args.dry_run,
        confirm=None if args.yes else prompt_confirm,
    )
    summary: dict[str, Any] = {}
    for row in rows:
        summary[row.status.value] = summary.get(row.status.value, 0) + 1
    return rows, summary


async def _secure_score(graph, args, config) -> CommandResult:
    row = await DefenderCollector(graph, config.collection).get_secure_score()
    if row is None:
        return [], {}
    return [row], {"Score": f"{row.current_score:g} / {row.max_score:g}", "Controls": len(row.controls)}


async def _secure_score_controls(graph, args, config) -> CommandResult:
    return await DefenderCollector(graph, config.collection).get_secure_score_controls(), {}


async def _identity_sensors(graph, args, config) -> CommandResult:
    return await DefenderCollector(graph, config.collection).get_identity_sensors(), {}


async def _sensor_deployment(graph, args, config) -> CommandResult:
    return [await DefenderCollector(graph, config.collection).get_sensor_deployment()], {}


async def _teams(graph, args, config) -> CommandResult:
    rows = await TeamsCollector(graph, config.collection).get_teams(include_owners=not args.no_owners)
    return rows, {"Ownerless": sum(1 for r in rows if not r.owners)} if not args.no_owners else {}


async def _agreements(graph, args, config) -> CommandResult:
    return await AgreementsCollector(graph, config.collection).get_agreements(), {}


async def _usage_report(graph, args, config) -> CommandResult:
    rows = await UsageReportCollector(graph, config.collection).get_report(
        args.report_name, period=args.period, date=args.date
    )
    return rows, {"Report": args.report_name}


COMMANDS: dict[str, Command] = {
    "roles": _roles,
    "role-history": _role_history,
    "app-credentials": _app_credentials,
    "new-app-credential": _new_app_credential,
    "remove-app-credentials": _remove_app_credentials,
    "secure-score": _secure_score,
    "secure-score-controls": _secure_score_controls,
    "identity-sensors": _identity_sensors,
    "sensor-deployment": _sensor_deployment,
    "teams": _teams,
    "agreements": _agreements,
    "usage-report": _usage_report,
}


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def _truncate(value: Any) -> str:
    text = str(value)
    return text if len(text) <= _CELL_WIDTH else text[: _CELL_WIDTH - 1] + "…"


def print_table(rows: list[Any], columns: Optional[list[str]] = None):
    """Fixed-width console table over flattened rows."""
    if not rows:
        print("  (no records)")
        return
    flat = [flatten_row(r) for r in rows]
    columns = columns or columns_for(flat)
    cells = [[_truncate(row.get(c, "")) for c in columns] for row in flat]
    widths = [
        max(len(c), *(len(r[i]) for r in cells))
        for i, c in enumerate(columns)
    ]
    print("  " + "  ".join(c.ljust(w) for c, w in zip(columns, widths)))
    print("  " + "  ".join("─" * w for w in widths))
    for r in cells:
        print("  " + "  ".join(v.ljust(w) for v, w in zip(r, widths)))
    print(f"\n  {len(rows)} record(s)")


def write_outputs(
    command: str,
    rows: list[Any],
    summary: dict[str, Any],
    config: ToolkitConfig,
    context: ReportContext,
) -> list[Path]:
    created = []
    formats = config.output.formats
    output_dir = config.output.output_dir

    if "table" in formats:
        print_table(rows, TABLE_COLUMNS.get(command))
    if "json" in formats:
        created.append(export_json(rows, output_dir, context, metadata=summary))
    if "csv" in formats:
        created.append(export_csv(rows, output_dir, context))
    if "html" in formats:
        created.append(export_html(rows, output_dir, context, summary=summary))

    for path in created:
        print(f"  📄 {path}")
    return created


async def run_command(
    args: argparse.Namespace,
    config: ToolkitConfig,
    profile: Optional[TenantProfile] = None,
) -> int:
    command = args.command
    token = Authenticator(config.auth).acquire_token()
    guardian = SafetyGuardian(allow_writes=command in WRITE_COMMANDS)

    async with GraphClient(token, guardian=guardian, config=config.collection) as graph:
        rows, summary = await COMMANDS[command](graph, args, config)
        logger.debug(f"Graph statistics: {graph.get_stats()}")

    if guardian.mutations:
        logger.info(f"{len(guardian.mutations)} write request(s) issued")
        logger.debug(f"Safety audit: {guardian.get_audit_record()}")

    tenant_name = args.tenant_name or (profile.tenant_display_name if profile else "") or "Unknown Tenant"
    title = TITLES.get(command, command)
    if command == "usage-report":
        title = f"{title}: {args.report_name}"
    context = ReportContext(
        title=title,
        report_name=command.replace("-", "_"),
        tenant_name=tenant_name,
    )
    write_outputs(command, rows, summary, config, context)

    if command == "remove-app-credentials" and any(r.status.value == "Failed" for r in rows):
        return 1
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Synchronous entry point for `python -m m365_toolkit` and `m365-toolkit`."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0
    if args.command == "profile":
        configure_logging(False)
        return _cmd_profile(args)
    if args.command == "permissions":
        return _print_permissions()

    configure_logging(args.verbose)
    try:
        config, profile = build_config(args)
        return asyncio.run(run_command(args, config, profile))
    except FetchAborted as e:
        logger.warning(f"Operation aborted: {e}")
        return 1
    except (AuthenticationError, ConfigurationError) as e:
        logger.error(str(e))
        return 1
    except ValueError as e:
        parser.error(str(e))
    except ToolkitError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
