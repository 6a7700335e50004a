"""
Named tenant profiles, stored in ~/.m365_identity_risk/profiles.json.

A profile holds the read-only app registration for one tenant plus the
tenant's assessment defaults (safe countries, sign-in lookback, which
environment variable carries its AbuseIPDB key). Analysts covering
several tenants pick one with `assess --profile <name>`; explicit CLI
flags always win over profile values.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_identity_risk.profiles")

CONFIG_DIR = Path.home() / ".m365_identity_risk"
PROFILES_FILE = CONFIG_DIR / "profiles.json"
DEFAULT_CERT_PATH = "./base64.txt"


@dataclass
class TenantProfile:
    name: str
    tenant_id: str
    client_id: str
    cert_path: str = DEFAULT_CERT_PATH
    safe_countries: list[str] = field(default_factory=list)
    lookback_days: Optional[int] = None
    abuseipdb_key_env: str = ""           # e.g. "CONTOSO_ABUSEIPDB_KEY"
    notes: str = ""

    def __post_init__(self):
        self.safe_countries = [c.strip().upper() for c in self.safe_countries if c.strip()]

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "TenantProfile":
        return cls(
            name=name,
            tenant_id=data["tenant_id"],
            client_id=data["client_id"],
            cert_path=data.get("cert_path") or DEFAULT_CERT_PATH,
            safe_countries=list(data.get("safe_countries") or []),
            lookback_days=data.get("lookback_days"),
            abuseipdb_key_env=data.get("abuseipdb_key_env", ""),
            notes=data.get("notes", ""),
        )

    def to_dict(self) -> dict:
        data = {
            "tenant_id": self.tenant_id,
            "client_id": self.client_id,
            "cert_path": self.cert_path,
            "safe_countries": self.safe_countries,
        }
        if self.lookback_days:
            data["lookback_days"] = self.lookback_days
        if self.abuseipdb_key_env:
            data["abuseipdb_key_env"] = self.abuseipdb_key_env
        if self.notes:
            data["notes"] = self.notes
        return data

    def resolve_cert_path(self) -> str:
        """Absolute certificate path; relative paths resolve against the cwd."""
        path = Path(self.cert_path).expanduser()
        return str(path if path.is_absolute() else Path.cwd() / path)

    def reputation_api_key(self) -> str:
        if not self.abuseipdb_key_env:
            return ""
        key = os.environ.get(self.abuseipdb_key_env, "")
        if not key:
            logger.warning(f"Profile '{self.name}': ${self.abuseipdb_key_env} is not set")
        return key


@dataclass
class ProfileStore:
    profiles: dict[str, TenantProfile] = field(default_factory=dict)
    default_profile: str = ""
    path: Path = PROFILES_FILE

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ProfileStore":
        """A missing or unparsable file loads as an empty store."""
        path = Path(path) if path else PROFILES_FILE
        if not path.exists():
            return cls(path=path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            profiles = {
                name: TenantProfile.from_dict(name, entry)
                for name, entry in data.get("profiles", {}).items()
            }
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.warning(f"Ignoring unreadable profile file {path}: {e}")
            return cls(path=path)
        return cls(profiles=profiles, default_profile=data.get("default_profile", ""), path=path)

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "default_profile": self.default_profile,
            "profiles": {name: p.to_dict() for name, p in self.profiles.items()},
        }
        self.path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")

    def add(self, profile: TenantProfile, set_default: bool = False) -> None:
        """Save a profile, replacing any with the same name. The first one becomes default."""
        self.profiles[profile.name] = profile
        if set_default or not self.default_profile:
            self.default_profile = profile.name
        self.save()

    def remove(self, name: str) -> bool:
        if self.profiles.pop(name, None) is None:
            return False
        if self.default_profile == name:
            self.default_profile = next(iter(self.profiles), "")
        self.save()
        return True

    def get(self, name: str) -> Optional[TenantProfile]:
        wanted = name.lower()
        return next((p for n, p in self.profiles.items() if n.lower() == wanted), None)

    def get_default(self) -> Optional[TenantProfile]:
        if self.default_profile in self.profiles:
            return self.profiles[self.default_profile]
        return next(iter(self.profiles.values()), None)

    def set_default(self, name: str) -> bool:
        if name not in self.profiles:
            return False
        self.default_profile = name
        self.save()
        return True

    def list_profiles(self) -> list[TenantProfile]:
        return sorted(self.profiles.values(), key=lambda p: p.name)


def resolve_profile(
    profile_name: Optional[str] = None,
    path: Optional[Path] = None,
) -> Optional[TenantProfile]:
    """The named profile, or the default one when no name is given."""
    store = ProfileStore.load(path)
    return store.get(profile_name) if profile_name else store.get_default()
