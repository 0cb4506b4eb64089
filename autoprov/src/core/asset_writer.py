import hashlib
import secrets
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, List, Optional

from autoprov.logger import get_console
from autoprov.src.core.certificates import export_p12
from autoprov.src.core.errors import AssetWriteError
from autoprov.src.core.models import Certificate, CodesignAssets, Platform, Profile

console = get_console()


def profile_extension(platform: Platform) -> str:
    return ".provisionprofile" if platform == Platform.MACOS else ".mobileprovision"


class AssetWriter:
    """Installs certificates into a keychain and profiles into the profiles directory"""

    def __init__(
        self,
        keychain_path: str,
        keychain_password: Optional[str],
        profiles_dir: Path,
        cert_dir: Optional[Path] = None,
        runner: Callable = subprocess.run,
    ):
        self.keychain_path = keychain_path
        self.keychain_password = keychain_password
        self.profiles_dir = Path(profiles_dir)
        self.cert_dir = Path(cert_dir) if cert_dir else None
        self._run = runner

    def _security(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = self._run(["security", *args], capture_output=True, text=True)
        except OSError as e:
            raise AssetWriteError(f"Failed to run security {args[0]}: {e}")
        if check and result.returncode != 0:
            raise AssetWriteError(
                f"security {args[0]} failed:\nstdout: {result.stdout}\nstderr: {result.stderr}"
            )
        return result

    def is_certificate_installed(self, certificate: Certificate) -> bool:
        if certificate.content is None:
            return False
        fingerprint = hashlib.sha1(certificate.content).hexdigest().upper()
        result = self._security("find-identity", "-v", "-p", "codesigning", self.keychain_path, check=False)
        return result.returncode == 0 and fingerprint in result.stdout.upper()

    def install_certificate(self, certificate: Certificate) -> None:
        if self.is_certificate_installed(certificate):
            console.print(f"[cyan]Certificate already installed:[/] {certificate.common_name}")
            return

        console.print(f"[blue]Installing certificate:[/] {certificate.common_name}")
        password = secrets.token_hex(16)
        p12 = export_p12(certificate, password)

        if self.keychain_password:
            self._security("unlock-keychain", "-p", self.keychain_password, self.keychain_path)

        with tempfile.NamedTemporaryFile(suffix=".p12") as temp_p12:
            temp_p12.write(p12)
            temp_p12.flush()
            self._security(
                "import",
                temp_p12.name,
                "-k",
                self.keychain_path,
                "-f",
                "pkcs12",
                "-T",
                "/usr/bin/codesign",
                "-T",
                "/usr/bin/security",
                "-P",
                password,
            )

        # Allow codesign to use the key without prompting
        if self.keychain_password:
            self._security(
                "set-key-partition-list",
                "-S",
                "apple-tool:,apple:",
                "-k",
                self.keychain_password,
                self.keychain_path,
            )
        console.print(f"[green]Certificate installed:[/] {certificate.common_name}")

    def save_certificate(self, certificate: Certificate) -> Optional[Path]:
        """Keep a newly created certificate in the certificate directory for later runs"""
        if self.cert_dir is None or certificate.private_key is None:
            return None

        class_dir = self.cert_dir / certificate.certificate_class.value
        cert_path = class_dir / "cert.p12"
        if cert_path.exists():
            return None

        password = secrets.token_hex(16)
        try:
            class_dir.mkdir(parents=True, exist_ok=True)
            cert_path.write_bytes(export_p12(certificate, password))
            (class_dir / "cert_pass.txt").write_text(password)
        except OSError as e:
            raise AssetWriteError(f"Failed to save certificate to {cert_path}: {e}")
        console.print(f"[green]Saved {certificate.certificate_class.value} certificate:[/] {cert_path}")
        return cert_path

    def install_profile(self, profile: Profile) -> Path:
        if not profile.content:
            raise AssetWriteError(f"Profile {profile.name} has no content to install")

        path = self.profiles_dir / f"{profile.uuid}{profile_extension(profile.platform)}"
        try:
            if path.exists() and path.read_bytes() == profile.content:
                return path
            self.profiles_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(profile.content)
        except OSError as e:
            raise AssetWriteError(f"Failed to write profile {path}: {e}")
        console.print(f"[green]Installed profile:[/] {profile.name} -> {path.name}")
        return path

    def write(self, assets: CodesignAssets) -> List[Path]:
        self.save_certificate(assets.certificate)
        self.install_certificate(assets.certificate)
        paths = []
        seen = set()
        for profile in list(assets.profiles_by_bundle_id.values()) + list(
            assets.ui_test_profiles_by_bundle_id.values()
        ):
            if profile.uuid in seen:
                continue
            seen.add(profile.uuid)
            paths.append(self.install_profile(profile))
        return paths
