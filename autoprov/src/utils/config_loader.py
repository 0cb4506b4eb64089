import os
from pathlib import Path
from typing import Any, Dict, Optional

import toml
from dotenv import load_dotenv

from autoprov.src.core.errors import ConfigurationError

load_dotenv()

TRUE_VALUES = ("1", "true", "yes", "on")


def get_config_path() -> Path:
    """Return the path to the configuration file."""
    env_path = os.environ.get("AUTOPROV_CONFIG")
    if env_path:
        return Path(env_path)
    return Path.home() / ".autoprov" / "config.toml"


def load_config() -> Dict[str, Any]:
    """Load configuration from TOML file."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}

    try:
        return toml.load(config_path)
    except (toml.TomlDecodeError, OSError) as e:
        raise ConfigurationError(f"Failed to load config {config_path}: {e}")


def _setting(section: str, key: str, env_var: str, default: Any = None) -> Any:
    """Environment variable first, then config section, then default"""
    value = os.environ.get(env_var)
    if value:
        return value
    value = load_config().get(section, {}).get(key)
    return default if value is None else value


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in TRUE_VALUES


def get_api_key_settings() -> Dict[str, Any]:
    """App Store Connect API key settings from [apple]"""
    return {
        "key_id": _setting("apple", "api_key_id", "AUTOPROV_API_KEY_ID"),
        "issuer_id": _setting("apple", "api_issuer_id", "AUTOPROV_API_ISSUER_ID"),
        "key_path": _setting("apple", "api_key_path", "AUTOPROV_API_KEY_PATH"),
        "enterprise": _as_bool(
            _setting("apple", "api_key_enterprise", "AUTOPROV_API_KEY_ENTERPRISE", False)
        ),
    }


def get_apple_id_settings() -> Dict[str, Any]:
    return {
        "apple_id": _setting("apple", "apple_id", "AUTOPROV_APPLE_ID"),
        "session_dir": get_session_dir(),
    }


def get_session_dir() -> Path:
    """Get session directory from config or environment."""
    session_dir = _setting("apple", "session_dir", "AUTOPROV_SESSION_DIR")
    if session_dir:
        return Path(session_dir).expanduser()

    # Default to ~/.autoprov/sessions if not specified
    return Path.home() / ".autoprov" / "sessions"


def get_cert_dir() -> Path:
    cert_dir = _setting("signing", "cert_dir", "AUTOPROV_CERT_DIR")
    return Path(cert_dir).expanduser() if cert_dir else Path.home() / ".autoprov" / "certificates"


def get_profiles_dir() -> Path:
    profiles_dir = _setting("signing", "profiles_dir", "AUTOPROV_PROFILES_DIR")
    if profiles_dir:
        return Path(profiles_dir).expanduser()
    return Path.home() / "Library" / "MobileDevice" / "Provisioning Profiles"


def get_keychain_settings() -> Dict[str, Optional[str]]:
    return {
        "path": _setting(
            "signing",
            "keychain",
            "AUTOPROV_KEYCHAIN",
            str(Path.home() / "Library" / "Keychains" / "login.keychain-db"),
        ),
        "password": _setting("signing", "keychain_password", "AUTOPROV_KEYCHAIN_PASSWORD"),
    }


def get_signing_defaults() -> Dict[str, Any]:
    """Defaults for ensure options that the CLI can override"""
    signing = load_config().get("signing", {})
    try:
        min_validity = int(signing.get("min_profile_validity_days", 0))
        xcode_version = int(signing.get("xcode_major_version", 15))
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid [signing] value in {get_config_path()}: {e}")
    if min_validity < 0:
        raise ConfigurationError("min_profile_validity_days must not be negative")

    return {
        "distribution_type": signing.get("distribution_type", "development"),
        "min_profile_validity_days": min_validity,
        "prefer_xcode_managed": _as_bool(signing.get("prefer_xcode_managed", True)),
        "xcode_major_version": xcode_version,
        "test_devices": list(signing.get("test_devices", [])),
        "fallback_to_local_assets": _as_bool(signing.get("fallback_to_local_assets", False)),
    }
