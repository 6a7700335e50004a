"""
M365 Identity Risk Engine — Command-line entry point

Usage:
    python -m m365_identity_risk assess alice@contoso.com bob@contoso.com
    python -m m365_identity_risk assess --accounts-file users.txt --profile contoso-prod
    python -m m365_identity_risk assess alice@contoso.com --config config.json --delegated

Review workflow:
    python -m m365_identity_risk mark <assessment.json> "SR-09|signin:<id>" --note "VPN egress"
    python -m m365_identity_risk unmark <assessment.json> "SR-09|signin:<id>"
    python -m m365_identity_risk recompute <assessment.json> --write

Profile management:
    python -m m365_identity_risk profile add <name> --tenant-id ... --client-id ...
    python -m m365_identity_risk profile list
    python -m m365_identity_risk profile remove <name>
    python -m m365_identity_risk profile set-default <name>

This tool is STRICTLY READ-ONLY. It will NEVER modify the tenant.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from . import __version__
from .assessment import (
    AssessmentRunner,
    ValidationError,
    build_reputation_client,
    rescore_export,
    validate_accounts,
    write_outputs_for_document,
)
from .auth.authenticator import AuthenticationError, Authenticator
from .config import CertificateAuth, DelegatedAuth, EngineConfig, REQUIRED_PERMISSIONS
from .exclusions.store import SQLiteExclusionStore
from .graph.client import GraphClient
from .indicators import CatalogError, FindingKey, load_catalog
from .profiles import ProfileStore, TenantProfile, resolve_profile
from .reporting import ExportFormatError, load_export
from .safety.guardian import SafetyGuardian


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
    print("Usage: python -m m365_identity_risk profile {add|list|remove|set-default}")
    return 0


def _profile_list() -> int:
    store = ProfileStore.load()
    profiles = store.list_profiles()
    if not profiles:
        print("No profiles configured. Add one with:\n")
        print("  python -m m365_identity_risk profile add <name> \\")
        print("    --tenant-id <GUID> --client-id <GUID> --cert-path ./base64.txt")
        return 0

    print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Safe countries':<16s} {'Default'}")
    print(f"  {'─'*20} {'─'*38} {'─'*16} {'─'*7}")
    for p in profiles:
        default_marker = "  ✓" if p.name == store.default_profile else ""
        countries = ",".join(p.safe_countries) or "-"
        print(f"  {p.name:<20s} {p.tenant_id:<38s} {countries:<16s}{default_marker}")
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
        cert_path=args.cert_path or "./base64.txt",
        safe_countries=args.safe_countries or [],
        lookback_days=args.lookback_days,
        abuseipdb_key_env=args.abuseipdb_key_env or "",
        notes=args.notes or "",
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

def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="m365_identity_risk",
        description="M365 Identity Compromise Risk Engine (READ-ONLY)",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # --- assess ---
    assess_p = subparsers.add_parser("assess", help="Assess one or more accounts")
    assess_p.add_argument("accounts", nargs="*", help="User principal names to assess")
    assess_p.add_argument("--accounts-file", type=Path,
                          help="File with one UPN per line ('#' starts a comment)")
    assess_p.add_argument("--profile", "-p", default=None,
                          help="Tenant profile name (run 'profile list' to see available)")
    assess_p.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    assess_p.add_argument("--delegated", action="store_true",
                          help="Use delegated (device-code) authentication instead of certificate")
    assess_p.add_argument("--cert-path", type=Path,
                          help="Path to base64-encoded certificate file (overrides profile)")
    assess_p.add_argument("--tenant-id", default=None, help="Tenant ID (overrides profile)")
    assess_p.add_argument("--client-id", default=None, help="Client ID (overrides profile)")
    assess_p.add_argument("--output-dir", "-o", type=Path, default=None,
                          help="Batch output directory (default: ./identity_risk_<timestamp>)")
    assess_p.add_argument("--lookback-days", type=int, default=None,
                          help="Sign-in / audit window in days")
    assess_p.add_argument("--safe-countries", nargs="+", default=None,
                          help="ISO alpha-2 countries considered normal (SR-04 / SR-15)")
    assess_p.add_argument("--no-reputation", action="store_true",
                          help="Skip AbuseIPDB lookups (reputation becomes unknown)")
    assess_p.add_argument("--catalog", type=Path, default=None, help="Override IOC catalog file")
    assess_p.add_argument("--formats", nargs="+", choices=["json", "csv", "executive"],
                          default=None, help="Output formats (json is always written)")

    # --- recompute ---
    re_p = subparsers.add_parser("recompute", help="Re-score an exported assessment")
    re_p.add_argument("export", type=Path, help="Path to assessment.json")
    re_p.add_argument("--exclusions-db", type=Path, default=None,
                      help="False-positive store (default: exclusions.db in the batch directory)")
    re_p.add_argument("--write", action="store_true",
                      help="Rewrite the assessment outputs with the new scores")

    # --- mark / unmark ---
    for action, help_text in (("mark", "Mark a finding as false positive"),
                              ("unmark", "Remove a false-positive mark")):
        m_p = subparsers.add_parser(action, help=help_text)
        m_p.add_argument("export", type=Path, help="Path to assessment.json")
        m_p.add_argument("finding_key", help="Finding key, e.g. 'SR-09|signin:<id>'")
        m_p.add_argument("--exclusions-db", type=Path, default=None)
        if action == "mark":
            m_p.add_argument("--note", default="", help="Reviewer note")

    # --- permissions ---
    subparsers.add_parser("permissions", help="List required Graph API permissions")

    # --- profile ---
    prof_parser = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof_parser.add_subparsers(dest="profile_action", help="Profile actions")

    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name", help="Short name for the profile (e.g. 'contoso-prod')")
    add_p.add_argument("--tenant-id", required=True, help="Entra tenant ID (GUID)")
    add_p.add_argument("--client-id", required=True, help="App registration client ID (GUID)")
    add_p.add_argument("--cert-path", default="./base64.txt",
                       help="Path to base64-encoded PFX (default: ./base64.txt)")
    add_p.add_argument("--safe-countries", nargs="+", default=None,
                       help="Default safe countries for this tenant")
    add_p.add_argument("--lookback-days", type=int, default=None,
                       help="Default sign-in / audit window for this tenant")
    add_p.add_argument("--abuseipdb-key-env", default=None,
                       help="Environment variable holding this tenant's AbuseIPDB key")
    add_p.add_argument("--notes", help="Optional admin notes")
    add_p.add_argument("--set-default", action="store_true", help="Set as default profile")

    prof_sub.add_parser("list", help="List all configured profiles")

    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name", help="Name of the profile to remove")

    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name", help="Name of the profile to set as default")

    return parser.parse_args(argv)


def read_accounts(args: argparse.Namespace) -> list[str]:
    accounts = list(args.accounts or [])
    if args.accounts_file:
        for line in args.accounts_file.read_text(encoding="utf-8").splitlines():
            line = line.split("#", 1)[0].strip()
            if line:
                accounts.append(line)
    return validate_accounts(accounts)


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Build engine configuration from profile, CLI args, or config file."""
    if args.config and args.config.exists():
        config = EngineConfig.from_file(args.config)
    else:
        config = EngineConfig()

    if args.delegated:
        config.auth.mode = "delegated"

    # --- Resolve tenant identity from profile or CLI flags ---
    profile = None
    if args.profile:
        profile = resolve_profile(args.profile)
        if not profile:
            raise SystemExit(
                f"\n❌ Profile '{args.profile}' not found. Use 'profile list' to see available profiles."
            )
    elif not args.config and not args.tenant_id:
        profile = resolve_profile()

    if profile:
        tenant_id = args.tenant_id or profile.tenant_id
        client_id = args.client_id or profile.client_id
        cert_path = str(args.cert_path) if args.cert_path else profile.resolve_cert_path()
        if profile.safe_countries and not config.detection.safe_countries:
            config.detection.safe_countries = list(profile.safe_countries)
        if profile.lookback_days:
            config.collection.lookback_days = profile.lookback_days
        if not config.reputation.api_key:
            config.reputation.api_key = profile.reputation_api_key()
    elif args.tenant_id and args.client_id:
        tenant_id = args.tenant_id
        client_id = args.client_id
        cert_path = str(args.cert_path) if args.cert_path else "./base64.txt"
    elif config.auth.certificate or config.auth.delegated:
        source = config.auth.certificate or config.auth.delegated
        tenant_id = source.tenant_id
        client_id = source.client_id
        cert_path = (config.auth.certificate.certificate_path
                     if config.auth.certificate else "./base64.txt")
    else:
        raise SystemExit(
            "\n❌ No tenant credentials found. Use one of:\n"
            "   • --profile <name>             (from saved profiles)\n"
            "   • --tenant-id X --client-id Y  (ad-hoc)\n"
            "   • --config config.json         (JSON config file)"
        )

    if config.auth.mode == "certificate":
        config.auth.certificate = CertificateAuth(
            tenant_id=tenant_id,
            client_id=client_id,
            certificate_path=cert_path,
        )
    elif not config.auth.delegated:
        config.auth.delegated = DelegatedAuth(tenant_id=tenant_id, client_id=client_id)

    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if args.lookback_days:
        config.collection.lookback_days = args.lookback_days
    if args.safe_countries:
        config.detection.safe_countries = [c.upper() for c in args.safe_countries]
    if args.no_reputation:
        config.reputation.enabled = False
    if args.catalog:
        config.catalog_path = str(args.catalog)
    if args.formats:
        config.output.formats = list(args.formats)
    config.verbose = config.verbose or args.verbose
    return config


def setup_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def run_assessment(config: EngineConfig, accounts: list[str]) -> int:
    catalog = load_catalog(config.catalog_path)
    guardian = SafetyGuardian()

    print("=" * 70)
    print(f" M365 Identity Risk Engine v{__version__}")
    print(" Mode: READ-ONLY — No tenant modifications will be made")
    print("=" * 70)
    print(f"\n📋 Batch:    {config.output.timestamp} ({len(accounts)} account(s))")
    print(f"📂 Output:   {Path(config.output.base_dir).resolve()}")
    print(f"📚 Catalog:  v{catalog.version} ({len(catalog)} indicators)")

    print("\n🔐 Authenticating...")
    authenticator = Authenticator(config.auth)
    token = await authenticator.acquire_token()
    print("✅ Authentication successful.")

    reputation_client = build_reputation_client(config, guardian)
    if reputation_client is None:
        print("⚠  AbuseIPDB disabled or no API key; IP reputation will be unknown.")

    store = SQLiteExclusionStore(config.output.exclusions_db)
    try:
        async with GraphClient(access_token=token, guardian=guardian) as graph:
            runner = AssessmentRunner(config, catalog, graph, reputation_client, store)
            outcomes = await runner.run_batch(accounts)
    finally:
        if reputation_client:
            await reputation_client.aclose()

    print("\n" + "=" * 70)
    print(" BATCH COMPLETE")
    print("=" * 70)
    for o in outcomes:
        if o.status == "succeeded":
            print(f"  ✅ {o.account:<40s} {o.level:<8s} score {o.overall_score}")
        else:
            print(f"  ❌ {o.account:<40s} FAILED — {o.error}")

    audit = guardian.get_audit_record()
    print(f"\n  Safety: {audit['checks_performed']} requests checked, "
          f"status {audit['status']}")
    print(f"  Path:   {Path(config.output.base_dir).resolve()}\n")
    return 0 if all(o.status == "succeeded" for o in outcomes) else 1


def _exclusions_db(args: argparse.Namespace) -> Path:
    # Account outputs live one level below the batch directory
    return args.exclusions_db or args.export.resolve().parent.parent / "exclusions.db"


def _cmd_recompute(args: argparse.Namespace) -> int:
    document = load_export(args.export)
    report_id = document["metadata"]["report_id"]
    store = SQLiteExclusionStore(_exclusions_db(args))
    lookup = store.lookup_for(report_id)

    updated = rescore_export(document, lookup)
    before = document["scores"]["executive_summary"]
    after = updated["scores"]["executive_summary"]
    print(f"  Report:  {report_id}")
    print(f"  Marks:   {len(lookup)} false positive(s)")
    print(f"  Before:  {before['overall_score']} ({before['level']})")
    print(f"  After:   {after['overall_score']} ({after['level']})")

    if args.write:
        formats = ["json", "csv", "executive"]
        for path in write_outputs_for_document(updated, args.export.parent, formats):
            print(f"  📄 {path}")
    return 0


def _cmd_mark(args: argparse.Namespace, unmark: bool = False) -> int:
    document = load_export(args.export)
    report_id = document["metadata"]["report_id"]
    key = FindingKey.parse(args.finding_key)
    known = {f["key"]: f for f in document["findings"]}
    if str(key) not in known:
        print(f"  ❌ {key} is not a finding of report {report_id}")
        return 1

    store = SQLiteExclusionStore(_exclusions_db(args))
    if unmark:
        if store.unmark(report_id, key):
            print(f"  ✅ Unmarked {key}")
        else:
            print(f"  ⚠  {key} was not marked")
        return 0
    mark = store.mark(report_id, key, note=args.note)
    print(f"  ✅ Marked {mark.finding_key} as false positive ({mark.marked_at})")
    if known[str(key)].get("points", 0) < 0:
        print(f"  ⚠  {key.indicator_id} is a mitigating indicator; excluding it raises the score.")
    print("  Run 'recompute' to update the scores.")
    return 0


def _cmd_permissions() -> int:
    print("\n  Required Microsoft Graph application permissions (read-only):\n")
    for name, purpose in REQUIRED_PERMISSIONS.items():
        print(f"  {name:<38s} {purpose}")
    print()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    """Synchronous entry point for `python -m m365_identity_risk`."""
    args = parse_args(argv)
    setup_logging(args.verbose)

    try:
        if args.command == "profile":
            return _cmd_profile(args)
        if args.command == "permissions":
            return _cmd_permissions()
        if args.command == "recompute":
            return _cmd_recompute(args)
        if args.command in ("mark", "unmark"):
            return _cmd_mark(args, unmark=args.command == "unmark")
        if args.command == "assess":
            accounts = read_accounts(args)
            if not accounts:
                print("❌ No accounts given. Pass UPNs or --accounts-file.")
                return 2
            config = build_config(args)
            if config.verbose:
                logging.getLogger().setLevel(logging.DEBUG)
            return asyncio.run(run_assessment(config, accounts))
    except ValidationError as e:
        print(f"❌ {e}")
        return 2
    except (CatalogError, ExportFormatError, ValueError) as e:
        print(f"❌ {e}")
        return 2
    except AuthenticationError as e:
        print(f"❌ Authentication failed: {e}")
        return 1

    parse_args(["--help"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
