import plistlib
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from asn1crypto.cms import ContentInfo
from cryptography import x509

from autoprov.src.core.errors import ProfileParseError
from autoprov.src.core.models import (
    DistributionType,
    Platform,
    Profile,
    is_xcode_managed_name,
)

PLATFORM_BY_NAME = {
    "ios": Platform.IOS,
    "tvos": Platform.TVOS,
    "osx": Platform.MACOS,
    "macos": Platform.MACOS,
}


def dump_prov(content: bytes) -> dict:
    """Decode the plist wrapped in a provisioning profile's CMS envelope"""
    try:
        content_info = ContentInfo.load(content)
        signed_data = content_info["content"]
        plist_data = signed_data["encap_content_info"]["content"].native
        return plistlib.loads(plist_data)
    except (ValueError, TypeError, KeyError, plistlib.InvalidFileException) as e:
        raise ProfileParseError(f"Invalid provisioning profile content: {e}")


def _utc(value: datetime) -> datetime:
    # plistlib returns naive datetimes in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _distribution_type(data: dict) -> DistributionType:
    if data.get("ProvisionsAllDevices"):
        return DistributionType.ENTERPRISE
    if data.get("ProvisionedDevices"):
        if data.get("Entitlements", {}).get("get-task-allow"):
            return DistributionType.DEVELOPMENT
        return DistributionType.AD_HOC
    return DistributionType.APP_STORE


def _bundle_id(entitlements: dict, team_id: str) -> str:
    app_id = entitlements.get("application-identifier") or entitlements.get(
        "com.apple.application-identifier", ""
    )
    prefix = f"{team_id}."
    if team_id and app_id.startswith(prefix):
        return app_id[len(prefix):]
    # Some profiles use the app ID prefix instead of the team ID
    return app_id.split(".", 1)[1] if "." in app_id else app_id


def _platform(data: dict) -> Platform:
    names = data.get("Platform") or ["iOS"]
    platform = PLATFORM_BY_NAME.get(str(names[0]).lower())
    if platform is None:
        raise ProfileParseError(f"Unknown profile platform: {names[0]}")
    return platform


def profile_from_content(content: bytes, remote_id: Optional[str] = None) -> Profile:
    data = dump_prov(content)
    try:
        entitlements = data.get("Entitlements", {})
        team_ids = data.get("TeamIdentifier") or [""]
        team_id = team_ids[0]
        serials = [
            format(x509.load_der_x509_certificate(der).serial_number, "X")
            for der in data.get("DeveloperCertificates", [])
        ]
        name = data["Name"]
        return Profile(
            uuid=data["UUID"],
            name=name,
            bundle_id=_bundle_id(entitlements, team_id),
            platform=_platform(data),
            distribution_type=_distribution_type(data),
            expiry=_utc(data["ExpirationDate"]),
            team_id=team_id,
            entitlements=entitlements,
            devices=list(data.get("ProvisionedDevices", [])),
            provisions_all_devices=bool(data.get("ProvisionsAllDevices", False)),
            certificate_serials=serials,
            xcode_managed=bool(data.get("IsXcodeManaged", False)) or is_xcode_managed_name(name),
            id=remote_id,
            content=content,
        )
    except (KeyError, ValueError) as e:
        raise ProfileParseError(f"Provisioning profile is missing data: {e}")


def read_profile(path: Path) -> Profile:
    try:
        content = Path(path).read_bytes()
    except OSError as e:
        raise ProfileParseError(f"Failed to read {path}: {e}")
    return profile_from_content(content)
