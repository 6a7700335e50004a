"""
Token acquisition for the read-only Graph session.

Certificate (app-only) auth is the normal mode for batch assessments;
device-code delegated auth covers ad-hoc runs by an analyst. A token is
acquired once per batch and reused for every account until it is within
EXPIRY_MARGIN_SECONDS of expiring.
"""

from __future__ import annotations

import base64
import binascii
import getpass
import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

import msal
from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)

from ..config import AuthConfig, CertificateAuth, REQUIRED_PERMISSIONS

logger = logging.getLogger("m365_identity_risk.auth")

APP_SCOPES = ["https://graph.microsoft.com/.default"]
EXPIRY_MARGIN_SECONDS = 300
PFX_SUFFIXES = (".pfx", ".p12")


class AuthenticationError(Exception):
    pass


def _authority(tenant_id: str) -> str:
    return f"https://login.microsoftonline.com/{tenant_id}"


def load_certificate_credential(cert_config: CertificateAuth) -> dict:
    """
    Read a PKCS#12 bundle and return MSAL's ``client_credential`` dict
    (``thumbprint`` + PEM ``private_key``).

    ``.pfx``/``.p12`` files are read as binary; anything else is expected to
    hold the bundle base64-encoded. The password comes from the config, then
    $M365_CERT_PASSWORD, then an interactive prompt.
    """
    path = Path(cert_config.certificate_path)
    if not path.is_file():
        raise AuthenticationError(f"Certificate file not found: {path}")

    password = cert_config.certificate_password or os.environ.get("M365_CERT_PASSWORD", "")
    if not password:
        password = getpass.getpass(f"Password for {path.name}: ")

    bundle = path.read_bytes()
    if path.suffix.lower() not in PFX_SUFFIXES:
        try:
            bundle = base64.b64decode(bundle.strip(), validate=True)
        except (binascii.Error, ValueError) as e:
            raise AuthenticationError(f"{path} is not valid base64: {e}") from e

    try:
        key, cert, _ = pkcs12.load_key_and_certificates(bundle, password.encode("utf-8"))
    except ValueError as e:
        raise AuthenticationError(f"Failed to load certificate {path.name}: {e}") from e
    if key is None or cert is None:
        raise AuthenticationError(f"{path.name} does not contain both a key and a certificate")

    thumbprint = cert.fingerprint(SHA1()).hex()
    logger.info(f"Loaded certificate {thumbprint} (expires {cert.not_valid_after_utc:%Y-%m-%d})")
    pem = key.private_bytes(Encoding.PEM, PrivateFormat.PKCS8, NoEncryption())
    return {"thumbprint": thumbprint, "private_key": pem.decode("utf-8")}


class Authenticator:
    """Acquires and caches a Graph access token for one batch."""

    def __init__(self, config: AuthConfig):
        self.config = config
        self._app: Optional[Union[msal.ConfidentialClientApplication,
                                  msal.PublicClientApplication]] = None
        self._access_token: Optional[str] = None
        self._token_expiry: Optional[float] = None

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @property
    def token_valid(self) -> bool:
        if not self._access_token or self._token_expiry is None:
            return False
        return time.time() < self._token_expiry - EXPIRY_MARGIN_SECONDS

    async def acquire_token(self) -> str:
        if self.token_valid:
            return self._access_token

        acquire = {
            "certificate": self._acquire_certificate_token,
            "delegated": self._acquire_delegated_token,
        }.get(self.config.mode)
        if acquire is None:
            raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

        result = acquire()
        if "access_token" not in result:
            reason = result.get("error_description") or result.get("error") or "no token returned"
            raise AuthenticationError(f"{self.config.mode} authentication failed: {reason}")

        self._access_token = result["access_token"]
        self._token_expiry = time.time() + float(result.get("expires_in", 3600))
        logger.info(f"Acquired {self.config.mode} token, valid for {result.get('expires_in', 3600)}s")
        return self._access_token

    def _acquire_certificate_token(self) -> dict:
        cert_config = self.config.certificate
        if cert_config is None:
            raise AuthenticationError("Certificate auth selected but no certificate settings given")
        if self._app is None:
            self._app = msal.ConfidentialClientApplication(
                client_id=cert_config.client_id,
                authority=_authority(cert_config.tenant_id),
                client_credential=load_certificate_credential(cert_config),
            )
        return self._app.acquire_token_for_client(scopes=APP_SCOPES)

    def _acquire_delegated_token(self) -> dict:
        delegated = self.config.delegated
        if delegated is None:
            raise AuthenticationError("Delegated auth selected but no tenant/client id given")
        if self._app is None:
            self._app = msal.PublicClientApplication(
                client_id=delegated.client_id,
                authority=_authority(delegated.tenant_id),
            )

        # A refresh within the same run needs no second device-code prompt
        accounts = self._app.get_accounts()
        if accounts:
            cached = self._app.acquire_token_silent(delegated.scopes, account=accounts[0])
            if cached and "access_token" in cached:
                return cached

        flow = self._app.initiate_device_flow(scopes=delegated.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'unknown error')}"
            )
        print(f"\n{'='*60}")
        print(f"  Sign in at {flow['verification_uri']} with code {flow['user_code']}")
        print(f"{'='*60}\n")
        return self._app.acquire_token_by_device_flow(flow)

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        return REQUIRED_PERMISSIONS
