"""
Authentication module — Client secret, certificate and delegated auth.
Uses MSAL for token acquisition against the Microsoft identity platform
(POST {authority}/oauth2/v2.0/token, grant_type=client_credentials).
"""

from __future__ import annotations

import base64
import getpass
import logging
from typing import Optional

from cryptography.hazmat.primitives.hashes import SHA1
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
import msal

from ..config import AuthConfig, ToolkitError, REQUIRED_PERMISSIONS

logger = logging.getLogger("m365_toolkit.auth")


class AuthenticationError(ToolkitError):
    """Raised when authentication fails."""
    pass


class Authenticator:
    """
    Handles MSAL-based authentication for Microsoft Graph.
    Supports:
      - Client secret app-only authentication (client credentials grant)
      - Certificate-based app-only authentication
      - Delegated interactive authentication (device code flow)
    """

    def __init__(self, config: AuthConfig):
        self.config = config
        self._access_token: Optional[str] = None

    def acquire_token(self) -> str:
        """Acquire an access token based on configured auth mode."""
        if self.config.mode == "secret":
            return self._acquire_secret_token()
        elif self.config.mode == "certificate":
            return self._acquire_certificate_token()
        elif self.config.mode == "delegated":
            return self._acquire_delegated_token()
        raise AuthenticationError(f"Unknown auth mode: {self.config.mode}")

    def _acquire_secret_token(self) -> str:
        """Acquire token with the client credentials grant and a client secret."""
        secret = self.config.client_secret
        if not secret:
            secret = getpass.getpass("Enter the client secret: ")
        if not secret:
            raise AuthenticationError("A client secret is required in secret mode.")

        logger.info("Authenticating with client secret...")
        app = msal.ConfidentialClientApplication(
            client_id=self.config.client_id,
            authority=self.config.authority,
            client_credential=secret,
        )
        result = app.acquire_token_for_client(scopes=self.config.scopes)
        return self._token_from_result(result, "Client secret")

    def _acquire_certificate_token(self) -> str:
        """Acquire token using certificate-based client credentials."""
        cert_path = self.config.certificate_path
        if not cert_path:
            raise AuthenticationError("Certificate path not provided.")

        logger.info("Authenticating with certificate-based app credentials...")
        password = self.config.certificate_password
        if not password:
            password = getpass.getpass("Enter the certificate password: ")

        private_key_pem, thumbprint = load_pfx_certificate(cert_path, password)
        logger.info(f"Certificate loaded. Thumbprint: {thumbprint}")

        app = msal.ConfidentialClientApplication(
            client_id=self.config.client_id,
            authority=self.config.authority,
            client_credential={
                "thumbprint": thumbprint,
                "private_key": private_key_pem,
            },
        )
        result = app.acquire_token_for_client(scopes=self.config.scopes)
        return self._token_from_result(result, "Certificate")

    def _acquire_delegated_token(self) -> str:
        """Acquire token using delegated (device code) flow."""
        logger.info("Initiating device code authentication flow...")

        app = msal.PublicClientApplication(
            client_id=self.config.client_id,
            authority=self.config.authority,
        )
        flow = app.initiate_device_flow(scopes=self.config.scopes)
        if "user_code" not in flow:
            raise AuthenticationError(
                f"Device code flow failed: {flow.get('error_description', 'Unknown')}"
            )

        print(f"\n{'='*60}")
        print(f"  To sign in, open: {flow['verification_uri']}")
        print(f"  Enter code: {flow['user_code']}")
        print(f"{'='*60}\n")

        result = app.acquire_token_by_device_flow(flow)
        return self._token_from_result(result, "Delegated")

    def _token_from_result(self, result: dict, label: str) -> str:
        if "access_token" in result:
            self._access_token = result["access_token"]
            logger.info(f"{label} authentication successful.")
            return self._access_token
        error = result.get("error_description", result.get("error", "Unknown"))
        raise AuthenticationError(f"{label} auth failed: {error}")

    @property
    def access_token(self) -> Optional[str]:
        return self._access_token

    @staticmethod
    def list_required_permissions() -> dict[str, str]:
        """Return the map of required Graph API permissions."""
        return REQUIRED_PERMISSIONS


def load_pfx_certificate(cert_path: str, password: str) -> tuple[str, str]:
    """
    Load a base64-encoded PFX file.
    Returns (private key PEM, SHA1 thumbprint hex).
    """
    try:
        with open(cert_path, "r") as f:
            cert_base64 = f.read().strip()

        cert_bytes = base64.b64decode(cert_base64)
        password_bytes = password.encode("utf-8") if password else None
        private_key, certificate, _ = pkcs12.load_key_and_certificates(
            cert_bytes, password_bytes
        )
    except FileNotFoundError:
        raise AuthenticationError(f"Certificate file not found: {cert_path}")
    except Exception as e:
        raise AuthenticationError(f"Failed to load certificate: {e}")

    if private_key is None or certificate is None:
        raise AuthenticationError(f"PFX file has no private key or certificate: {cert_path}")

    private_key_pem = private_key.private_bytes(
        Encoding.PEM, PrivateFormat.PKCS8, NoEncryption()
    ).decode("utf-8")
    thumbprint = certificate.fingerprint(SHA1()).hex()
    return private_key_pem, thumbprint
