import base64
import hashlib
import http.cookiejar as cookielib
import json
import re
from typing import Any, Dict, List, Optional

import requests

from autoprov.logger import get_console
from autoprov.src.apple.client import (
    BUNDLE_ID_PLATFORMS,
    REQUEST_TIMEOUT,
    RemoteProvisioningClient,
    app_id_name,
    create_retrying_session,
    profile_type,
)
from autoprov.src.apple.credentials import AppleIDCredential
from autoprov.src.core.certificates import certificate_from_der, generate_signing_request
from autoprov.src.core.entitlements import capability_settings
from autoprov.src.core.errors import AuthSelectionError, ProfileParseError, RemoteAPIError
from autoprov.src.core.models import (
    Certificate,
    CertificateClass,
    Device,
    DistributionType,
    Platform,
    Profile,
)
from autoprov.src.core.profile_reader import profile_from_content

console = get_console()

PORTAL_URL = "https://developer.apple.com/services-account/"
ACCOUNT_URL = PORTAL_URL + "QH65B2/account/"

CERTIFICATE_TYPES = {
    CertificateClass.DEVELOPMENT: "DEVELOPMENT,IOS_DEVELOPMENT",
    CertificateClass.DISTRIBUTION: "DISTRIBUTION,IOS_DISTRIBUTION",
}
NEW_CERTIFICATE_TYPES = {
    CertificateClass.DEVELOPMENT: "DEVELOPMENT",
    CertificateClass.DISTRIBUTION: "DISTRIBUTION",
}
# Values used by regenProvisioningProfile.action
PORTAL_DISTRIBUTION_TYPES = {
    DistributionType.DEVELOPMENT: "limited",
    DistributionType.AD_HOC: "adhoc",
    DistributionType.APP_STORE: "store",
    DistributionType.ENTERPRISE: "inhouse",
}
SUB_PLATFORMS = {Platform.IOS: "", Platform.TVOS: "tvOS", Platform.MACOS: ""}
# Listing goes through method-overridden POSTs, which are safe to resend
READ_METHODS = frozenset({"GET", "POST"})


class DeveloperPortalSession:
    """Developer Portal web session restored from saved cookies"""

    def __init__(self, credential: AppleIDCredential, session: Optional[requests.Session] = None):
        self.credential = credential
        self.session = session or requests.Session()
        self.csrf: Optional[str] = None
        self.csrf_ts: Optional[str] = None
        self.session_data: Dict[str, Any] = {}

    def _session_id(self) -> str:
        """Consistent session ID from the Apple ID email"""
        return f"auth-{hashlib.sha256(self.credential.apple_id.encode()).hexdigest()[:8]}"

    @property
    def cookiejar_path(self) -> str:
        return str(self.credential.session_dir / f"{self._session_id()}.cookies")

    @property
    def session_path(self) -> str:
        return str(self.credential.session_dir / f"{self._session_id()}.session")

    def load(self) -> None:
        """Load cookies and session data written by a previous sign in"""
        console.print(f"Loading Apple ID session from: {self.credential.session_dir}")
        try:
            with open(self.session_path) as f:
                self.session_data = json.load(f)
            jar = cookielib.LWPCookieJar(filename=self.cookiejar_path)
            jar.load(ignore_discard=True, ignore_expires=True)
            self.session.cookies = jar
        except (OSError, ValueError, cookielib.LoadError) as e:
            raise AuthSelectionError(
                f"No saved Apple ID session for {self.credential.apple_id}: {e}"
            )

    def _cookie_value(self, name: str) -> Optional[str]:
        for cookie in self.session.cookies:
            if cookie.name == name:
                return cookie.value
        return None

    def fetch_csrf_tokens(self) -> None:
        """Mutating portal requests need the csrf and csrf_ts tokens"""
        try:
            response = self.session.get(
                "https://developer.apple.com/account/resources", timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise RemoteAPIError(f"Failed to validate Apple ID session: {e}")
        if response.status_code != 200:
            raise AuthSelectionError(
                "Apple ID session is no longer valid, sign in again to refresh it"
            )

        self.csrf = self._cookie_value("csrf") or response.headers.get("csrf")
        self.csrf_ts = self._cookie_value("csrf_ts") or response.headers.get("csrf_ts")

        # If still not found, try to extract from page content
        if not self.csrf:
            match = re.search(r'csrf["\']\s*:\s*["\']([^"\']+)["\']', response.text)
            if match:
                self.csrf = match.group(1)
        if not self.csrf_ts:
            match = re.search(r'csrf_ts["\']\s*:\s*["\']([^"\']+)["\']', response.text)
            if match:
                self.csrf_ts = match.group(1)

        if not self.csrf or not self.csrf_ts:
            raise AuthSelectionError("Failed to retrieve CSRF tokens from the Developer Portal")
        console.print("[green]Apple ID session restored[/]")

    def open(self) -> "DeveloperPortalSession":
        self.load()
        self.fetch_csrf_tokens()
        return self


class SessionProvisioningClient(RemoteProvisioningClient):
    """Developer Portal client driven by an Apple ID web session"""

    def __init__(
        self,
        portal: DeveloperPortalSession,
        team_id: Optional[str] = None,
        read_session: Optional[requests.Session] = None,
    ):
        self.portal = portal
        self.session = portal.session
        self.read_session = read_session or create_retrying_session(READ_METHODS)
        self._team_id = team_id
        self._opened = False
        self._bundle_ids: Dict[str, str] = {}
        self.default_headers = {
            "Accept": "application/json, text/plain, */*",
            "Accept-Language": "en-US,en;q=0.5",
            "Content-Type": "application/vnd.api+json",
            "X-Requested-With": "XMLHttpRequest",
            "X-HTTP-Method-Override": "GET",
        }

    def _ensure_open(self) -> None:
        if not self._opened:
            self.portal.open()
            self.read_session.cookies = self.session.cookies
            self._opened = True

    def _mutation_headers(self, content_type: str = "application/vnd.api+json") -> Dict[str, str]:
        return {
            "Accept": "application/json, text/plain, */*",
            "Content-Type": content_type,
            "X-Requested-With": "XMLHttpRequest",
            "csrf": self.portal.csrf,
            "csrf_ts": str(self.portal.csrf_ts),
        }

    def _send(
        self, method: str, url: str, expected=(200,), read: bool = False, **kwargs
    ) -> requests.Response:
        self._ensure_open()
        session = self.read_session if read else self.session
        try:
            response = session.request(method, url, timeout=REQUEST_TIMEOUT, **kwargs)
        except requests.RequestException as e:
            raise RemoteAPIError(f"{method} {url} failed: {e}")
        if response.status_code not in expected:
            raise RemoteAPIError(f"{method} {url} failed", response.status_code, response.text)
        return response

    def _json(self, response: requests.Response) -> Dict[str, Any]:
        try:
            return response.json()
        except ValueError as e:
            raise RemoteAPIError(f"Invalid JSON from the Developer Portal: {e}")

    @property
    def team_id(self) -> str:
        if not self._team_id:
            self._team_id = self._first_team_id()
        return self._team_id

    def _first_team_id(self) -> str:
        response = self._send(
            "POST",
            ACCOUNT_URL + "getTeams",
            read=True,
            json={"includeInMigrationTeams": 1},
            headers={
                "Accept": "application/json, text/javascript",
                "Content-Type": "application/json",
                "X-Requested-With": "XMLHttpRequest",
            },
        )
        teams = self._json(response).get("teams", [])
        if not teams:
            raise RemoteAPIError("The Apple ID is not a member of any team")
        return teams[0]["teamId"]

    def _list(self, resource: str, query: str) -> List[Dict[str, Any]]:
        """List resources through the method-overridden POST the portal uses"""
        response = self._send(
            "POST",
            PORTAL_URL + f"v1/{resource}",
            read=True,
            json={"urlEncodedQueryParams": query, "teamId": self.team_id},
            headers=self.default_headers.copy(),
        )
        return self._json(response).get("data", [])

    def list_certificates(self, certificate_class: CertificateClass) -> List[Certificate]:
        console.print(f"[blue]Fetching {certificate_class.value} certificates for team {self.team_id}...")
        items = self._list(
            "certificates",
            f"limit=1000&sort=displayName&filter[certificateType]={CERTIFICATE_TYPES[certificate_class]}",
        )
        certificates = []
        for item in items:
            content = item["attributes"].get("certificateContent")
            if not content:
                continue
            certificate = certificate_from_der(base64.b64decode(content), remote_id=item["id"])
            certificate.certificate_class = certificate_class
            certificates.append(certificate)
        console.print(f"[green]Found {len(certificates)} certificates")
        return certificates

    def create_certificate(self, certificate_class: CertificateClass) -> Certificate:
        console.print(f"[blue]Creating {certificate_class.value} certificate...")
        private_key, csr = generate_signing_request("autoprov")
        response = self._send(
            "POST",
            PORTAL_URL + "v1/certificates",
            expected=(200, 201),
            json={
                "data": {
                    "type": "certificates",
                    "attributes": {
                        "certificateType": NEW_CERTIFICATE_TYPES[certificate_class],
                        "csrContent": csr,
                        "teamId": self.team_id,
                    },
                }
            },
            headers=self._mutation_headers(),
        )
        data = self._json(response)["data"]
        certificate = certificate_from_der(
            base64.b64decode(data["attributes"]["certificateContent"]), remote_id=data["id"]
        )
        certificate.certificate_class = certificate_class
        certificate.private_key = private_key
        certificate.has_private_key = True
        return certificate

    def _download_profile(self, profile_id: str, platform: Platform) -> bytes:
        response = self._send(
            "GET",
            ACCOUNT_URL + f"{self._path_platform(platform)}/profile/downloadProfileContent",
            read=True,
            params={"teamId": self.team_id, "provisioningProfileId": profile_id},
            headers={"Accept": "*/*", "X-Requested-With": "XMLHttpRequest"},
        )
        return response.content

    @staticmethod
    def _path_platform(platform: Platform) -> str:
        return "mac" if platform == Platform.MACOS else "ios"

    def _profiles(self, query: str, platform: Platform) -> List[Profile]:
        profiles = []
        for item in self._list("profiles", query):
            try:
                content = item["attributes"].get("profileContent")
                raw = base64.b64decode(content) if content else self._download_profile(item["id"], platform)
                profiles.append(profile_from_content(raw, remote_id=item["id"]))
            except ProfileParseError as e:
                console.print(f"[yellow]Skipping profile {item.get('id')}: {e}[/]")
        return profiles

    def list_profiles(self, platform: Platform, distribution_type: DistributionType) -> List[Profile]:
        console.print(f"[blue]Fetching {distribution_type.value} profiles for team {self.team_id}...")
        profiles = self._profiles(
            "limit=1000&sort=name"
            f"&filter[profileType]={profile_type(platform, distribution_type)}"
            "&filter[profileState]=ACTIVE",
            platform,
        )
        console.print(f"[green]Found {len(profiles)} profiles")
        return profiles

    def find_profile(
        self, name: str, platform: Platform, distribution_type: DistributionType
    ) -> Optional[Profile]:
        profiles = self._profiles(
            f"limit=1000&filter[name]={name}"
            f"&filter[profileType]={profile_type(platform, distribution_type)}",
            platform,
        )
        return next((p for p in profiles if p.name == name), None)

    def _ensure_bundle_id(self, identifier: str, entitlements: Dict[str, Any], platform: Platform) -> str:
        if identifier in self._bundle_ids:
            return self._bundle_ids[identifier]

        bundles = self._list("bundleIds", f"filter[identifier]={identifier}")
        match = next((b for b in bundles if b["attributes"]["identifier"] == identifier), None)
        if match is None:
            console.print(f"[yellow]App ID {identifier} not found, registering...")
            response = self._send(
                "POST",
                PORTAL_URL + "v1/bundleIds",
                expected=(200, 201),
                json={
                    "data": {
                        "type": "bundleIds",
                        "attributes": {
                            "identifier": identifier,
                            "name": app_id_name(identifier),
                            "platform": BUNDLE_ID_PLATFORMS[platform],
                            "seedId": self.team_id,
                            "teamId": self.team_id,
                        },
                        "relationships": {"bundleIdCapabilities": {"data": []}},
                    }
                },
                headers=self._mutation_headers(),
            )
            match = self._json(response)["data"]

        self._enable_capabilities(match["id"], identifier, entitlements)
        self._bundle_ids[identifier] = match["id"]
        return match["id"]

    def _enable_capabilities(self, resource_id: str, identifier: str, entitlements: Dict[str, Any]) -> None:
        capabilities = []
        for key, value in (entitlements or {}).items():
            attributes = capability_settings(key, value)
            if attributes is None:
                continue
            capabilities.append(
                {
                    "type": "bundleIdCapabilities",
                    "attributes": {"enabled": True, "settings": attributes["settings"]},
                    "relationships": {
                        "capability": {
                            "data": {"type": "capabilities", "id": attributes["capabilityType"]}
                        }
                    },
                }
            )
        if not capabilities:
            return

        console.print(f"[cyan]Enabling {len(capabilities)} capabilities for {identifier}")
        self._send(
            "PATCH",
            PORTAL_URL + f"v1/bundleIds/{resource_id}",
            json={
                "data": {
                    "type": "bundleIds",
                    "id": resource_id,
                    "attributes": {
                        "identifier": identifier,
                        "seedId": self.team_id,
                        "teamId": self.team_id,
                    },
                    "relationships": {"bundleIdCapabilities": {"data": capabilities}},
                }
            },
            headers=self._mutation_headers(),
        )

    def _regen_profile(
        self,
        profile_id: str,
        name: str,
        app_id_id: str,
        platform: Platform,
        distribution_type: DistributionType,
        certificate_ids: List[str],
        devices: List[Device],
    ) -> Profile:
        response = self._send(
            "POST",
            ACCOUNT_URL + f"{self._path_platform(platform)}/profile/regenProvisioningProfile.action",
            data={
                "appIdId": app_id_id,
                "provisioningProfileId": profile_id,
                "distributionType": PORTAL_DISTRIBUTION_TYPES[distribution_type],
                "provisioningProfileName": name,
                "certificateIds": ",".join(certificate_ids),
                "deviceIds": ",".join(d.id for d in devices if d.id),
                "teamId": self.team_id,
                "subPlatform": SUB_PLATFORMS[platform],
                "returnFullObjects": "false",
            },
            headers=self._mutation_headers("application/x-www-form-urlencoded"),
        )
        data = self._json(response)
        if data.get("resultCode") != 0:
            raise RemoteAPIError(f"Profile generation failed: {data.get('userString') or data}")

        new_id = data.get("provisioningProfile", {}).get("provisioningProfileId")
        if not new_id:
            raise RemoteAPIError("No profile ID in the Developer Portal response")

        # Downloading is idempotent, creating is not
        content = self._download_profile(new_id, platform)
        try:
            profile = profile_from_content(content, remote_id=new_id)
        except ProfileParseError as e:
            raise RemoteAPIError(f"Generated profile {name} could not be read: {e}")
        profile.certificate_ids = list(certificate_ids)
        return profile

    def create_profile(
        self,
        name: str,
        bundle_id: str,
        entitlements: Dict[str, Any],
        platform: Platform,
        distribution_type: DistributionType,
        certificate_ids: List[str],
        devices: List[Device],
    ) -> Profile:
        console.print(f"[blue]Creating {distribution_type.value} profile:[/] {name}")
        app_id_id = self._ensure_bundle_id(bundle_id, entitlements, platform)
        profile = self._regen_profile(
            "", name, app_id_id, platform, distribution_type, certificate_ids, devices
        )
        console.print(f"[green]Profile created:[/] {profile.name} ({profile.uuid})")
        return profile

    def update_profile(
        self,
        profile: Profile,
        entitlements: Dict[str, Any],
        certificate_ids: List[str],
        devices: List[Device],
    ) -> Profile:
        console.print(f"[blue]Regenerating profile:[/] {profile.name}")
        app_id_id = self._ensure_bundle_id(profile.bundle_id, entitlements, profile.platform)
        return self._regen_profile(
            profile.id or "",
            profile.name,
            app_id_id,
            profile.platform,
            profile.distribution_type,
            certificate_ids,
            devices,
        )

    def delete_profile(self, profile: Profile) -> None:
        if not profile.id:
            raise RemoteAPIError(f"Profile {profile.name} has no Developer Portal ID")
        console.print(f"[yellow]Deleting profile {profile.name}...")
        self._send(
            "POST",
            ACCOUNT_URL + f"{self._path_platform(profile.platform)}/profile/deleteProvisioningProfile.action",
            data={"teamId": self.team_id, "provisioningProfileId": profile.id},
            headers=self._mutation_headers("application/x-www-form-urlencoded"),
        )

    def list_devices(self, platform: Platform) -> List[Device]:
        platform_filter = "MAC_OS" if platform == Platform.MACOS else "IOS"
        items = self._list(
            "devices",
            f"limit=1000&filter[status]=ENABLED&filter[platform]={platform_filter}",
        )
        devices = [
            Device(
                udid=item["attributes"]["udid"],
                name=item["attributes"].get("name", ""),
                platform=platform,
                device_class=item["attributes"].get("deviceClass"),
                id=item["id"],
            )
            for item in items
        ]
        console.print(f"[green]Found {len(devices)} registered devices")
        return devices

    def register_device(self, udid: str, platform: Platform, name: str) -> Device:
        console.print(f"[blue]Registering device {name} ({udid})...")
        response = self._send(
            "POST",
            PORTAL_URL + "v1/devices",
            expected=(200, 201),
            json={
                "data": {
                    "type": "devices",
                    "attributes": {
                        "name": name,
                        "udid": udid,
                        "platform": "MAC_OS" if platform == Platform.MACOS else "IOS",
                        "teamId": self.team_id,
                    },
                }
            },
            headers=self._mutation_headers(),
        )
        data = self._json(response)["data"]
        return Device(
            udid=data["attributes"]["udid"],
            name=data["attributes"].get("name", name),
            platform=platform,
            device_class=data["attributes"].get("deviceClass"),
            id=data["id"],
        )
