import re
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, Optional

from autoprov.src.core.entitlements import entitlements_contained
from autoprov.src.core.models import DistributionType, Platform, Profile

_UDID_STRIP = re.compile(r"[^a-zA-Z0-9-]")


def normalize_udid(udid: str) -> str:
    """Device UDIDs compare case-insensitively and without separators"""
    return _UDID_STRIP.sub("", udid).replace("-", "").lower()


def is_active(profile: Profile, min_validity_days: int, now: datetime) -> bool:
    return now + timedelta(days=min_validity_days) < profile.expiry


def embeds_certificates(profile: Profile, serials: Iterable[str]) -> bool:
    if not profile.certificate_serials:
        return False
    embedded = {s.upper() for s in profile.certificate_serials}
    return all(s.upper() in embedded for s in serials)


def provisions_devices(profile: Profile, device_udids: Optional[Iterable[str]]) -> bool:
    if profile.provisions_all_devices:
        return True
    wanted = {normalize_udid(u) for u in device_udids or []}
    if not wanted:
        return True
    if not profile.devices:
        return False
    provisioned = {normalize_udid(u) for u in profile.devices}
    return wanted.issubset(provisioned)


class CompatibilityMatcher:
    """Decides if a single profile can sign a single target"""

    def __init__(self, now: Optional[datetime] = None):
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def mismatch_reason(
        self,
        profile: Profile,
        platform: Platform,
        distribution_type: DistributionType,
        bundle_id: str,
        required_entitlements: Optional[Dict[str, Any]],
        min_validity_days: int,
        owned_certificate_serials: Iterable[str],
        required_device_udids: Optional[Iterable[str]] = None,
    ) -> Optional[str]:
        """Return why the profile cannot be used, or None when it matches"""
        if not is_active(profile, min_validity_days, self.now):
            return f"expires before {min_validity_days} day(s) from now ({profile.expiry:%Y-%m-%d})"
        if profile.distribution_type != distribution_type:
            return f"distribution type is {profile.distribution_type.value}"
        if profile.platform != platform:
            return f"platform is {profile.platform.value}"
        if profile.bundle_id != bundle_id:
            return f"bundle ID is {profile.bundle_id}"
        if not embeds_certificates(profile, owned_certificate_serials):
            return "does not embed the signing certificate"
        if not entitlements_contained(required_entitlements, profile.entitlements):
            return "entitlements do not cover the target entitlements"
        if not provisions_devices(profile, required_device_udids):
            return "does not provision every test device"
        if profile.xcode_managed:
            return "managed by Xcode"
        return None

    def matches(self, profile: Profile, *args, **kwargs) -> bool:
        return self.mismatch_reason(profile, *args, **kwargs) is None
