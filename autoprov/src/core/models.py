from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from autoprov.src.core.errors import ConfigurationError


class Platform(str, Enum):
    IOS = "iOS"
    TVOS = "tvOS"
    MACOS = "macOS"


class DistributionType(str, Enum):
    DEVELOPMENT = "development"
    AD_HOC = "ad-hoc"
    ENTERPRISE = "enterprise"
    APP_STORE = "app-store"


class CertificateClass(str, Enum):
    DEVELOPMENT = "development"
    DISTRIBUTION = "distribution"


CERTIFICATE_CLASS_BY_DISTRIBUTION = {
    DistributionType.DEVELOPMENT: CertificateClass.DEVELOPMENT,
    DistributionType.AD_HOC: CertificateClass.DISTRIBUTION,
    DistributionType.ENTERPRISE: CertificateClass.DISTRIBUTION,
    DistributionType.APP_STORE: CertificateClass.DISTRIBUTION,
}


def requires_device_list(distribution_type: DistributionType) -> bool:
    """Development and ad-hoc profiles embed an explicit device list"""
    return distribution_type in (DistributionType.DEVELOPMENT, DistributionType.AD_HOC)


def is_xcode_managed_name(name: str) -> bool:
    """Profiles generated by Xcode use well known name prefixes"""
    if name.startswith("XC"):
        return True
    return name.startswith("iOS Team") and "Provisioning Profile" in name


def wildcard_bundle_id(bundle_id: str) -> str:
    """com.acme.app.uitests -> com.acme.app.*"""
    idx = bundle_id.rfind(".")
    if idx == -1:
        raise ConfigurationError(f"Cannot create a wildcard bundle ID from: {bundle_id}")
    return bundle_id[:idx] + ".*"


@dataclass
class Certificate:
    serial: str
    common_name: str
    team_id: str
    team_name: str
    certificate_class: CertificateClass
    expiry: datetime
    has_private_key: bool = False
    id: Optional[str] = None
    content: Optional[bytes] = field(default=None, repr=False)
    private_key: Any = field(default=None, repr=False)

    def is_valid(self, now: datetime) -> bool:
        return now < self.expiry


@dataclass
class Profile:
    uuid: str
    name: str
    bundle_id: str
    platform: Platform
    distribution_type: DistributionType
    expiry: datetime
    team_id: str = ""
    entitlements: Dict[str, Any] = field(default_factory=dict)
    devices: List[str] = field(default_factory=list)
    provisions_all_devices: bool = False
    certificate_serials: List[str] = field(default_factory=list)
    xcode_managed: bool = False
    id: Optional[str] = None
    certificate_ids: List[str] = field(default_factory=list)
    content: Optional[bytes] = field(default=None, repr=False)

    @property
    def is_wildcard(self) -> bool:
        return self.bundle_id.endswith("*")

    @property
    def bundle_id_prefix(self) -> str:
        """Literal part of the bundle identifier pattern"""
        return self.bundle_id[:-1] if self.is_wildcard else self.bundle_id

    def matches_bundle_id(self, bundle_id: str) -> bool:
        if self.is_wildcard:
            return bundle_id.startswith(self.bundle_id_prefix)
        return bundle_id == self.bundle_id


@dataclass
class Device:
    udid: str
    name: str = ""
    platform: Optional[Platform] = None
    device_class: Optional[str] = None
    id: Optional[str] = None


@dataclass
class Target:
    bundle_id: str
    entitlements: Dict[str, Any] = field(default_factory=dict)
    is_ui_test: bool = False


@dataclass
class AppLayout:
    team_id: str
    platform: Platform
    entitlements_by_bundle_id: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    ui_test_bundle_ids: List[str] = field(default_factory=list)

    def targets(self) -> List[Target]:
        targets = [
            Target(bundle_id=bundle_id, entitlements=entitlements or {})
            for bundle_id, entitlements in self.entitlements_by_bundle_id.items()
        ]
        targets.extend(
            Target(bundle_id=bundle_id, is_ui_test=True)
            for bundle_id in self.ui_test_bundle_ids
        )
        return targets

    def remove_satisfied(self, bundle_ids) -> None:
        for bundle_id in bundle_ids:
            self.entitlements_by_bundle_id.pop(bundle_id, None)
            if bundle_id in self.ui_test_bundle_ids:
                self.ui_test_bundle_ids.remove(bundle_id)

    @property
    def is_empty(self) -> bool:
        return not self.entitlements_by_bundle_id and not self.ui_test_bundle_ids


@dataclass
class CodesignGroup:
    certificate: Certificate
    profiles_by_bundle_id: Dict[str, Profile]
    ui_test_profiles_by_bundle_id: Dict[str, Profile] = field(default_factory=dict)
    tier: str = ""

    def all_profiles(self) -> List[Profile]:
        return list(self.profiles_by_bundle_id.values()) + list(
            self.ui_test_profiles_by_bundle_id.values()
        )


@dataclass
class CodesignAssets:
    certificate: Certificate
    profiles_by_bundle_id: Dict[str, Profile] = field(default_factory=dict)
    ui_test_profiles_by_bundle_id: Dict[str, Profile] = field(default_factory=dict)

    @classmethod
    def from_group(cls, group: CodesignGroup) -> "CodesignAssets":
        return cls(
            certificate=group.certificate,
            profiles_by_bundle_id=dict(group.profiles_by_bundle_id),
            ui_test_profiles_by_bundle_id=dict(group.ui_test_profiles_by_bundle_id),
        )
