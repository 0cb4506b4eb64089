import itertools
import plistlib
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from asn1crypto import cms
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from autoprov.src.apple.client import RemoteProvisioningClient
from autoprov.src.core.models import (
    Certificate,
    CertificateClass,
    Device,
    DistributionType,
    Platform,
    Profile,
)

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
TEAM_ID = "TEAM123456"
SERIAL = "1A2B3C"

AUTOPROV_ENV_VARS = (
    "AUTOPROV_API_KEY_ID",
    "AUTOPROV_API_ISSUER_ID",
    "AUTOPROV_API_KEY_PATH",
    "AUTOPROV_API_KEY_ENTERPRISE",
    "AUTOPROV_APPLE_ID",
    "AUTOPROV_SESSION_DIR",
    "AUTOPROV_CERT_DIR",
    "AUTOPROV_PROFILES_DIR",
    "AUTOPROV_KEYCHAIN",
    "AUTOPROV_KEYCHAIN_PASSWORD",
)


def make_x509(
    common_name: str = "Apple Development: Jane Appleseed (J4N3)",
    team_id: str = TEAM_ID,
    serial: int = int(SERIAL, 16),
    days: int = 365,
):
    """Self-signed stand-in for a signing certificate and its key"""
    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, team_id),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Acme Inc"),
        ]
    )
    now = datetime.now(timezone.utc)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .sign(key, hashes.SHA256())
    )
    return key, certificate


def make_profile_content(data: Dict[str, Any]) -> bytes:
    """Provisioning profile bytes: a plist wrapped in CMS signed data"""
    signed_data = cms.SignedData(
        {
            "version": "v1",
            "digest_algorithms": [],
            "encap_content_info": {"content_type": "data", "content": plistlib.dumps(data)},
            "signer_infos": [],
        }
    )
    return cms.ContentInfo({"content_type": "signed_data", "content": signed_data}).dump()


def profile_plist(certificate: x509.Certificate, **overrides) -> Dict[str, Any]:
    data = {
        "Name": "autoprov iOS development - (com.acme.app)",
        "UUID": "0F1E2D3C-AAAA-BBBB-CCCC-1234567890AB",
        "TeamIdentifier": [TEAM_ID],
        "Platform": ["iOS"],
        "ExpirationDate": datetime(2030, 1, 1, 12, 0),
        "Entitlements": {
            "application-identifier": f"{TEAM_ID}.com.acme.app",
            "get-task-allow": True,
            "aps-environment": "development",
        },
        "ProvisionedDevices": ["00008030-001A2B3C4D5E802E"],
        "DeveloperCertificates": [certificate.public_bytes(serialization.Encoding.DER)],
    }
    data.update(overrides)
    return data


def make_certificate(
    serial: str = SERIAL,
    certificate_class: CertificateClass = CertificateClass.DEVELOPMENT,
    days: int = 365,
    has_private_key: bool = True,
    remote_id: Optional[str] = None,
    team_id: str = TEAM_ID,
) -> Certificate:
    return Certificate(
        serial=serial,
        common_name=f"Apple Development: Jane Appleseed ({serial})",
        team_id=team_id,
        team_name="Acme Inc",
        certificate_class=certificate_class,
        expiry=NOW + timedelta(days=days),
        has_private_key=has_private_key,
        id=remote_id,
    )


def make_profile(
    uuid: str,
    bundle_id: str,
    distribution_type: DistributionType = DistributionType.DEVELOPMENT,
    platform: Platform = Platform.IOS,
    days: int = 100,
    serials=(SERIAL,),
    entitlements: Optional[Dict[str, Any]] = None,
    devices=(),
    provisions_all_devices: bool = False,
    xcode_managed: bool = False,
    name: Optional[str] = None,
    remote_id: Optional[str] = None,
    team_id: str = TEAM_ID,
) -> Profile:
    return Profile(
        uuid=uuid,
        name=name or f"Profile {uuid}",
        bundle_id=bundle_id,
        platform=platform,
        distribution_type=distribution_type,
        expiry=NOW + timedelta(days=days),
        team_id=team_id,
        entitlements=dict(entitlements or {}),
        devices=list(devices),
        provisions_all_devices=provisions_all_devices,
        certificate_serials=list(serials),
        xcode_managed=xcode_managed,
        id=remote_id,
        content=f"content-{uuid}".encode(),
    )


class FakeRemoteClient(RemoteProvisioningClient):
    """In-memory Developer Portal recording every call"""

    MUTATIONS = {
        "create_certificate",
        "create_profile",
        "update_profile",
        "delete_profile",
        "register_device",
    }

    def __init__(self, certificates=(), profiles=(), devices=()):
        self.certificates: List[Certificate] = list(certificates)
        self.profiles: List[Profile] = list(profiles)
        self.devices: List[Device] = list(devices)
        self.calls: List[tuple] = []
        self._ids = itertools.count(1)

    def mutations(self) -> List[str]:
        return [call[0] for call in self.calls if call[0] in self.MUTATIONS]

    def _serials_for(self, certificate_ids: List[str]) -> List[str]:
        return [c.serial for c in self.certificates if c.id in certificate_ids]

    def list_certificates(self, certificate_class):
        self.calls.append(("list_certificates", certificate_class))
        return [c for c in self.certificates if c.certificate_class == certificate_class]

    def create_certificate(self, certificate_class):
        self.calls.append(("create_certificate", certificate_class))
        number = next(self._ids)
        certificate = make_certificate(
            serial=f"NEW{number}",
            certificate_class=certificate_class,
            remote_id=f"cert-new-{number}",
        )
        self.certificates.append(certificate)
        return certificate

    def list_profiles(self, platform, distribution_type):
        self.calls.append(("list_profiles", platform, distribution_type))
        return [
            p
            for p in self.profiles
            if p.platform == platform and p.distribution_type == distribution_type
        ]

    def find_profile(self, name, platform, distribution_type):
        self.calls.append(("find_profile", name))
        return next(
            (
                p
                for p in self.profiles
                if p.name == name
                and p.platform == platform
                and p.distribution_type == distribution_type
            ),
            None,
        )

    def create_profile(
        self, name, bundle_id, entitlements, platform, distribution_type, certificate_ids, devices
    ):
        self.calls.append(("create_profile", name, bundle_id))
        number = next(self._ids)
        profile = make_profile(
            uuid=f"NEW-PROFILE-{number}",
            bundle_id=bundle_id,
            distribution_type=distribution_type,
            platform=platform,
            days=365,
            serials=self._serials_for(certificate_ids),
            entitlements=entitlements,
            devices=[d.udid for d in devices],
            provisions_all_devices=distribution_type == DistributionType.ENTERPRISE,
            name=name,
            remote_id=f"profile-{number}",
        )
        self.profiles.append(profile)
        return profile

    def update_profile(self, profile, entitlements, certificate_ids, devices):
        self.calls.append(("update_profile", profile.name))
        self.profiles.remove(profile)
        number = next(self._ids)
        updated = make_profile(
            uuid=f"UPDATED-PROFILE-{number}",
            bundle_id=profile.bundle_id,
            distribution_type=profile.distribution_type,
            platform=profile.platform,
            days=365,
            serials=self._serials_for(certificate_ids),
            entitlements=entitlements,
            devices=[d.udid for d in devices],
            name=profile.name,
            remote_id=f"profile-{number}",
        )
        self.profiles.append(updated)
        return updated

    def delete_profile(self, profile):
        self.calls.append(("delete_profile", profile.name))
        self.profiles.remove(profile)

    def list_devices(self, platform):
        self.calls.append(("list_devices", platform))
        return list(self.devices)

    def register_device(self, udid, platform, name):
        self.calls.append(("register_device", udid))
        device = Device(udid=udid, name=name, platform=platform, id=f"device-{udid}")
        self.devices.append(device)
        return device


class FakeWriter:
    def __init__(self):
        self.written = []
        self.installed_certificates = []

    def write(self, assets):
        self.written.append(assets)
        return []

    def install_certificate(self, certificate):
        self.installed_certificates.append(certificate)


class FakeProject:
    def __init__(self, layout=None, managed=False, error: Optional[Exception] = None):
        self.layout = layout
        self.managed = managed
        self.error = error
        self.forced = []

    def is_signing_managed_automatically(self):
        if self.error is not None:
            raise self.error
        return self.managed

    def platform(self):
        return self.layout.platform if self.layout else Platform.IOS

    def get_app_layout(self, include_ui_tests):
        return self.layout

    def force_codesign_assets(self, distribution_type, assets):
        self.forced.append((distribution_type, assets))


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def remote():
    return FakeRemoteClient()


@pytest.fixture
def writer():
    return FakeWriter()


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Point the config file at tmp_path and clear AUTOPROV_* overrides"""
    for name in AUTOPROV_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    config_path = tmp_path / "config.toml"
    monkeypatch.setenv("AUTOPROV_CONFIG", str(config_path))
    return config_path
