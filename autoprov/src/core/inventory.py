from pathlib import Path
from typing import Dict, Iterable, List, Optional

from autoprov.logger import get_console
from autoprov.src.core.certificates import load_p12
from autoprov.src.core.errors import ConfigurationError, ProfileParseError
from autoprov.src.core.models import Certificate, CertificateClass, Profile
from autoprov.src.core.profile_reader import read_profile

console = get_console()

PROFILE_EXTENSIONS = (".mobileprovision", ".provisionprofile")


class AssetInventory:
    """Known certificates and profiles, keyed by serial and UUID in insertion order"""

    def __init__(
        self,
        certificates: Iterable[Certificate] = (),
        profiles: Iterable[Profile] = (),
    ):
        self._certificates: Dict[str, Certificate] = {}
        self._profiles: Dict[str, Profile] = {}
        self.merge(certificates, profiles)

    def add_certificate(self, certificate: Certificate) -> Certificate:
        """Add or merge a certificate, keeping the private key and remote ID we know of"""
        serial = certificate.serial.upper()
        existing = self._certificates.get(serial)
        if existing is None:
            self._certificates[serial] = certificate
            return certificate

        existing.id = existing.id or certificate.id
        existing.content = existing.content or certificate.content
        if certificate.private_key is not None and existing.private_key is None:
            existing.private_key = certificate.private_key
        existing.has_private_key = existing.has_private_key or certificate.has_private_key
        return existing

    def add_profile(self, profile: Profile) -> Profile:
        existing = self._profiles.get(profile.uuid)
        if existing is not None:
            profile.id = profile.id or existing.id
            profile.content = profile.content or existing.content
        self._profiles[profile.uuid] = profile
        return profile

    def remove_profile(self, uuid: str) -> None:
        self._profiles.pop(uuid, None)

    def merge(self, certificates: Iterable[Certificate], profiles: Iterable[Profile]) -> None:
        for certificate in certificates:
            self.add_certificate(certificate)
        for profile in profiles:
            self.add_profile(profile)

    def certificates(self, certificate_class: Optional[CertificateClass] = None) -> List[Certificate]:
        return [
            c
            for c in self._certificates.values()
            if certificate_class is None or c.certificate_class == certificate_class
        ]

    def profiles(self) -> List[Profile]:
        return list(self._profiles.values())

    def certificate(self, serial: str) -> Optional[Certificate]:
        return self._certificates.get(serial.upper())

    def profile(self, uuid: str) -> Optional[Profile]:
        return self._profiles.get(uuid)

    @classmethod
    def from_sources(cls, *sources) -> "AssetInventory":
        inventory = cls()
        for source in sources:
            inventory.merge(source.list_certificates(), source.list_profiles())
        return inventory


class LocalCertificateSource:
    """Certificates stored as <cert_dir>/<class>/cert.p12 with a cert_pass.txt"""

    def __init__(self, cert_dir: Path):
        self.cert_dir = Path(cert_dir)

    def list_certificates(self) -> List[Certificate]:
        certificates = []
        for certificate_class in CertificateClass:
            class_dir = self.cert_dir / certificate_class.value
            cert_path = class_dir / "cert.p12"
            if not cert_path.exists():
                continue

            pass_file = class_dir / "cert_pass.txt"
            password = pass_file.read_text().strip() if pass_file.exists() else ""
            try:
                certificate = load_p12(cert_path, password, certificate_class)
            except ConfigurationError as e:
                console.print(f"[yellow]Skipping {certificate_class.value} certificate: {e}[/]")
                continue
            console.print(
                f"[green]Loaded {certificate_class.value} certificate:[/] "
                f"{certificate.common_name} ({certificate.serial})"
            )
            certificates.append(certificate)
        return certificates

    def list_profiles(self) -> List[Profile]:
        return []


class LocalProfileSource:
    """Installed provisioning profiles"""

    def __init__(self, profiles_dir: Path):
        self.profiles_dir = Path(profiles_dir)

    def list_certificates(self) -> List[Certificate]:
        return []

    def list_profiles(self) -> List[Profile]:
        if not self.profiles_dir.exists():
            return []

        profiles = []
        for path in sorted(self.profiles_dir.iterdir()):
            if path.suffix not in PROFILE_EXTENSIONS:
                continue
            try:
                profiles.append(read_profile(path))
            except ProfileParseError as e:
                console.print(f"[yellow]Skipping {path.name}: {e}[/]")
        console.print(f"[cyan]Found {len(profiles)} installed provisioning profiles")
        return profiles
