from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from autoprov.logger import get_console
from autoprov.src.core.errors import AuthSelectionError, ConfigurationError
from autoprov.src.utils.config_loader import get_api_key_settings, get_apple_id_settings

console = get_console()


class AuthSource(str, Enum):
    API_KEY = "api-key"
    APPLE_ID = "apple-id"


@dataclass
class APIKeyCredential:
    key_id: str
    issuer_id: str
    private_key: str = field(repr=False)
    enterprise: bool = False


@dataclass
class AppleIDCredential:
    apple_id: str
    session_dir: Path


@dataclass
class Credentials:
    """Exactly one kind of credential, chosen once per run"""

    api_key: Optional[APIKeyCredential] = None
    apple_id: Optional[AppleIDCredential] = None

    @property
    def source(self) -> Optional[AuthSource]:
        if self.apple_id is not None:
            return AuthSource.APPLE_ID
        if self.api_key is not None:
            return AuthSource.API_KEY
        return None


def load_api_key_credential() -> Optional[APIKeyCredential]:
    settings = get_api_key_settings()
    if not settings["key_id"] or not settings["issuer_id"]:
        return None

    key_path = settings["key_path"]
    if not key_path:
        raise ConfigurationError("API key ID is set but the .p8 key path is missing")
    key_path = Path(key_path).expanduser()
    try:
        private_key = key_path.read_text()
    except OSError as e:
        raise ConfigurationError(f"Failed to read API key {key_path}: {e}")

    return APIKeyCredential(
        key_id=settings["key_id"],
        issuer_id=settings["issuer_id"],
        private_key=private_key,
        enterprise=settings["enterprise"],
    )


def load_apple_id_credential() -> Optional[AppleIDCredential]:
    settings = get_apple_id_settings()
    if not settings["apple_id"]:
        return None
    return AppleIDCredential(apple_id=settings["apple_id"], session_dir=settings["session_dir"])


def select_credentials(
    auth_source: Optional[AuthSource] = None,
    api_key: Optional[APIKeyCredential] = None,
    apple_id: Optional[AppleIDCredential] = None,
) -> Credentials:
    """Pick the credential to use.

    Configuring both kinds is ambiguous unless a source is forced.
    """
    if auth_source == AuthSource.API_KEY:
        if api_key is None:
            raise AuthSelectionError("API key authentication requested but no API key is configured")
        return Credentials(api_key=api_key)

    if auth_source == AuthSource.APPLE_ID:
        if apple_id is None:
            raise AuthSelectionError("Apple ID authentication requested but no Apple ID is configured")
        return Credentials(apple_id=apple_id)

    if api_key is not None and apple_id is not None:
        raise AuthSelectionError(
            "Both an API key and an Apple ID are configured, choose one with --auth"
        )
    if api_key is not None:
        console.print("[blue]Using App Store Connect API key authentication[/]")
        return Credentials(api_key=api_key)
    if apple_id is not None:
        console.print("[blue]Using Apple ID session authentication[/]")
        return Credentials(apple_id=apple_id)

    raise AuthSelectionError(
        "No Developer Portal credentials found. Configure an API key "
        "(key_id, issuer_id, key_path) or an Apple ID session under [apple]"
    )


def create_client(credentials: Credentials, team_id: Optional[str] = None):
    """Build the remote provisioning client for the selected credential"""
    if credentials.source == AuthSource.APPLE_ID:
        from autoprov.src.apple.session_client import DeveloperPortalSession, SessionProvisioningClient

        portal = DeveloperPortalSession(credentials.apple_id)
        return SessionProvisioningClient(portal, team_id=team_id)

    if credentials.source == AuthSource.API_KEY:
        from autoprov.src.apple.api_key_client import APIKeyProvisioningClient

        return APIKeyProvisioningClient(credentials.api_key)

    raise AuthSelectionError("No credential selected")
