"""
Configuration module for the M365 Identity Risk Engine.
Defines tunable detection parameters, API endpoints, and operational settings.
"""

from __future__ import annotations

import os
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from datetime import datetime, timezone


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Falls back to M365_CERT_PASSWORD, then prompt


@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: [
        "AuditLog.Read.All",
        "Directory.Read.All",
        "Policy.Read.All",
        "UserAuthenticationMethod.Read.All",
        "IdentityRiskyUser.Read.All",
        "MailboxSettings.Read",
    ])


@dataclass
class AuthConfig:
    """Authentication configuration — supports both modes."""
    mode: str = "certificate"  # "certificate" or "delegated"
    certificate: Optional[CertificateAuth] = None
    delegated: Optional[DelegatedAuth] = None


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

MAX_CONCURRENT_REQUESTS = 4       # Parallel requests to Graph within one account
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0
MAX_BACKOFF_SECONDS = 120.0
BACKOFF_MULTIPLIER = 2.0

DEFAULT_PAGE_SIZE = 999
MAX_PAGES_PER_ENDPOINT = 200      # Sign-in logs for one user rarely exceed this
BATCH_SIZE = 20                   # Graph $batch max is 20 requests


# ─── AbuseIPDB Settings ─────────────────────────────────────────────────────

ABUSEIPDB_CHECK_URL = "https://api.abuseipdb.com/api/v2/check"
ABUSEIPDB_TIMEOUT_SECONDS = 15.0


# ─── Collection Settings ────────────────────────────────────────────────────

@dataclass
class CollectionConfig:
    """Controls for per-account telemetry collection."""
    lookback_days: int = 30               # Sign-in / audit window
    page_size: int = DEFAULT_PAGE_SIZE
    max_pages: int = MAX_PAGES_PER_ENDPOINT
    use_beta_sign_ins: bool = True        # beta exposes authenticationDetails
    collect_inbox_rules: bool = True      # Requires MailboxSettings.Read
    collect_oauth_grants: bool = True


# ─── Detection Settings ─────────────────────────────────────────────────────

@dataclass
class DetectionConfig:
    """Parameters consumed by indicator evaluators (never by the scorer)."""
    safe_countries: list[str] = field(default_factory=list)   # ISO alpha-2
    suspicious_abuse_score: int = 25      # SR-09 reputation floor
    suspicious_usage_types: list[str] = field(default_factory=lambda: [
        "Data Center/Web Hosting/Transit",
        "Content Delivery Network",
        "Reserved",
    ])
    suspicious_asns: list[int] = field(default_factory=list)
    impossible_travel_hours: float = 2.0
    recent_change_days: int = 7           # UR-06 / UR-08 window
    admin_app_names: list[str] = field(default_factory=lambda: [
        "Azure Portal",
        "Microsoft Azure PowerShell",
        "Microsoft Azure CLI",
        "Microsoft Graph Command Line Tools",
        "Graph Explorer",
        "Azure Active Directory PowerShell",
    ])
    scripted_user_agents: list[str] = field(default_factory=lambda: [
        "python-requests",
        "python-urllib",
        "axios",
        "curl/",
        "go-http-client",
        "okhttp",
        "powershell",
        "node-fetch",
    ])
    inbox_rule_keywords: list[str] = field(default_factory=lambda: [
        "invoice", "payment", "wire", "bank", "transfer", "password",
        "security", "hacked", "phish", "mfa", "helpdesk", "urgent",
    ])
    oauth_allow_list: list[str] = field(default_factory=list)  # appIds


# ─── Reputation Settings ────────────────────────────────────────────────────

@dataclass
class ReputationConfig:
    """AbuseIPDB lookup settings."""
    api_key: str = ""                     # Falls back to ABUSEIPDB_API_KEY
    max_age_days: int = 90
    max_queries: int = 0                  # Per-account budget; 0 = unlimited
    enabled: bool = True

    def resolve_api_key(self) -> str:
        return self.api_key or os.environ.get("ABUSEIPDB_API_KEY", "")


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory and format settings."""
    base_dir: str = ""
    timestamp: str = ""
    formats: list[str] = field(default_factory=lambda: [
        "json", "csv", "executive"
    ])

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(
                os.getcwd(),
                f"identity_risk_{self.timestamp}"
            )

    @property
    def batch_dir(self) -> Path:
        return Path(self.base_dir)

    def account_dir(self, user_principal_name: str) -> Path:
        safe = user_principal_name.lower().replace("@", "_at_")
        return self.batch_dir / safe

    @property
    def exclusions_db(self) -> Path:
        return self.batch_dir / "exclusions.db"


# ─── Master Configuration ───────────────────────────────────────────────────

DEFAULT_CATALOG_PATH = Path(__file__).parent / "data" / "catalog.json"


@dataclass
class EngineConfig:
    """Top-level configuration for the entire engine."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    collection: CollectionConfig = field(default_factory=CollectionConfig)
    detection: DetectionConfig = field(default_factory=DetectionConfig)
    reputation: ReputationConfig = field(default_factory=ReputationConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    catalog_path: str = str(DEFAULT_CATALOG_PATH)
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        """Load configuration from a JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "EngineConfig":
        config = cls()
        if "auth" in data:
            auth_data = data["auth"]
            config.auth.mode = auth_data.get("mode", "certificate")
            if "certificate" in auth_data:
                c = auth_data["certificate"]
                config.auth.certificate = CertificateAuth(
                    tenant_id=c["tenant_id"],
                    client_id=c["client_id"],
                    certificate_path=c.get("certificate_path", "./base64.txt"),
                    certificate_password=c.get("certificate_password", ""),
                )
            if "delegated" in auth_data:
                d = auth_data["delegated"]
                config.auth.delegated = DelegatedAuth(
                    tenant_id=d["tenant_id"],
                    client_id=d["client_id"],
                )
        for section in ("collection", "detection", "reputation", "output"):
            target = getattr(config, section)
            for k, v in data.get(section, {}).items():
                if hasattr(target, k):
                    setattr(target, k, v)
        config.detection.safe_countries = [
            c.upper() for c in config.detection.safe_countries
        ]
        config.catalog_path = data.get("catalog_path", config.catalog_path)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Graph API Permissions (Least Privilege, Read-Only) ─────────

REQUIRED_PERMISSIONS = {
    "User.Read.All": "Resolve the assessed account",
    "AuditLog.Read.All": "Read sign-in logs and directory audits",
    "Directory.Read.All": "Read role assignments and service principals",
    "RoleManagement.Read.Directory": "Read directory role assignments",
    "UserAuthenticationMethod.Read.All": "Read MFA registrations",
    "IdentityRiskyUser.Read.All": "Read Identity Protection user risk",
    "Policy.Read.All": "Read Conditional Access policies and named locations",
    "MailboxSettings.Read": "Read inbox rules",
    "DelegatedPermissionGrant.Read.All": "Read OAuth consent grants",
}
