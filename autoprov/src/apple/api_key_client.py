import base64
import time
from typing import Any, Dict, List, Optional

import jwt
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
from autoprov.src.apple.credentials import APIKeyCredential
from autoprov.src.core.certificates import certificate_from_der, generate_signing_request
from autoprov.src.core.entitlements import MANUAL_CONFIGURATION_CAPABILITIES, capability_settings
from autoprov.src.core.errors import ProfileParseError, RemoteAPIError
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

BASE_URL = "https://api.appstoreconnect.apple.com/"
ENTERPRISE_BASE_URL = "https://api.enterprise.developer.apple.com/"
AUDIENCE = "appstoreconnect-v1"
ENTERPRISE_AUDIENCE = "apple-developer-enterprise-v1"
TOKEN_LIFETIME = 18 * 60
PAGE_LIMIT = 200

CERTIFICATE_TYPES = {
    CertificateClass.DEVELOPMENT: "DEVELOPMENT,IOS_DEVELOPMENT",
    CertificateClass.DISTRIBUTION: "DISTRIBUTION,IOS_DISTRIBUTION",
}
NEW_CERTIFICATE_TYPES = {
    CertificateClass.DEVELOPMENT: "DEVELOPMENT",
    CertificateClass.DISTRIBUTION: "DISTRIBUTION",
}
DEVICE_PLATFORMS = {
    Platform.IOS: "IOS",
    Platform.TVOS: "IOS",
    Platform.MACOS: "MAC_OS",
}


class APIKeyProvisioningClient(RemoteProvisioningClient):
    """App Store Connect API client authenticated with an ES256 signed JWT"""

    def __init__(self, credential: APIKeyCredential, session: Optional[requests.Session] = None):
        self.credential = credential
        self.base_url = ENTERPRISE_BASE_URL if credential.enterprise else BASE_URL
        self.audience = ENTERPRISE_AUDIENCE if credential.enterprise else AUDIENCE
        self.session = session or create_retrying_session()
        self._token: Optional[str] = None
        self._token_expiry = 0.0
        self._bundle_ids: Dict[str, str] = {}

    def _bearer_token(self) -> str:
        now = time.time()
        # Refresh a minute before Apple would reject the token
        if self._token is None or now > self._token_expiry - 60:
            issued_at = int(now)
            self._token_expiry = issued_at + TOKEN_LIFETIME
            self._token = jwt.encode(
                {
                    "iss": self.credential.issuer_id,
                    "iat": issued_at,
                    "exp": int(self._token_expiry),
                    "aud": self.audience,
                },
                self.credential.private_key,
                algorithm="ES256",
                headers={"kid": self.credential.key_id, "typ": "JWT"},
            )
        return self._token

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        payload: Optional[Dict[str, Any]] = None,
        expected: tuple = (200,),
    ) -> Dict[str, Any]:
        url = path if path.startswith("https://") else self.base_url + path
        headers = {
            "Authorization": f"Bearer {self._bearer_token()}",
            "Accept": "application/json",
        }
        try:
            response = self.session.request(
                method,
                url,
                params=params,
                json=payload,
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        except requests.RequestException as e:
            raise RemoteAPIError(f"{method} {path} failed: {e}")

        if response.status_code not in expected:
            raise RemoteAPIError(
                f"{method} {path} failed", response.status_code, response.text
            )
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            raise RemoteAPIError(f"{method} {path} returned invalid JSON: {e}")

    def _get_all(self, path: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Follow links.next until every page is fetched"""
        items = []
        data = self._request("GET", path, params={**params, "limit": PAGE_LIMIT})
        items.extend(data.get("data", []))
        next_url = data.get("links", {}).get("next")
        while next_url:
            data = self._request("GET", next_url)
            items.extend(data.get("data", []))
            next_url = data.get("links", {}).get("next")
        return items

    def list_certificates(self, certificate_class: CertificateClass) -> List[Certificate]:
        console.print(f"[blue]Fetching {certificate_class.value} certificates...")
        items = self._get_all(
            "v1/certificates",
            {"filter[certificateType]": CERTIFICATE_TYPES[certificate_class]},
        )

        certificates = []
        for item in items:
            content = item["attributes"].get("certificateContent")
            if not content:
                continue
            certificate = certificate_from_der(base64.b64decode(content), remote_id=item["id"])
            certificate.certificate_class = certificate_class
            certificates.append(certificate)

        console.print(f"[green]Found {len(certificates)} {certificate_class.value} certificates")
        return certificates

    def create_certificate(self, certificate_class: CertificateClass) -> Certificate:
        console.print(f"[blue]Creating {certificate_class.value} certificate...")
        private_key, csr = generate_signing_request("autoprov")
        data = self._request(
            "POST",
            "v1/certificates",
            payload={
                "data": {
                    "type": "certificates",
                    "attributes": {
                        "certificateType": NEW_CERTIFICATE_TYPES[certificate_class],
                        "csrContent": csr,
                    },
                }
            },
            expected=(201,),
        )["data"]

        certificate = certificate_from_der(
            base64.b64decode(data["attributes"]["certificateContent"]), remote_id=data["id"]
        )
        certificate.certificate_class = certificate_class
        certificate.private_key = private_key
        certificate.has_private_key = True
        console.print(f"[green]Certificate created:[/] {certificate.common_name} ({certificate.serial})")
        return certificate

    def _to_profile(self, item: Dict[str, Any]) -> Profile:
        content = base64.b64decode(item["attributes"]["profileContent"])
        profile = profile_from_content(content, remote_id=item["id"])
        certificates = item.get("relationships", {}).get("certificates", {}).get("data") or []
        profile.certificate_ids = [c["id"] for c in certificates]
        return profile

    def _profiles(self, params: Dict[str, Any]) -> List[Profile]:
        profiles = []
        for item in self._get_all("v1/profiles", {**params, "include": "certificates"}):
            try:
                profiles.append(self._to_profile(item))
            except (ProfileParseError, KeyError, ValueError) as e:
                console.print(f"[yellow]Skipping profile {item.get('id')}: {e}[/]")
        return profiles

    def list_profiles(self, platform: Platform, distribution_type: DistributionType) -> List[Profile]:
        console.print(f"[blue]Fetching {distribution_type.value} profiles...")
        profiles = self._profiles(
            {
                "filter[profileType]": profile_type(platform, distribution_type),
                "filter[profileState]": "ACTIVE",
            }
        )
        console.print(f"[green]Found {len(profiles)} profiles")
        return profiles

    def find_profile(
        self, name: str, platform: Platform, distribution_type: DistributionType
    ) -> Optional[Profile]:
        profiles = self._profiles(
            {
                "filter[name]": name,
                "filter[profileType]": profile_type(platform, distribution_type),
            }
        )
        return next((p for p in profiles if p.name == name), None)

    def _ensure_bundle_id(self, identifier: str, entitlements: Dict[str, Any], platform: Platform) -> str:
        if identifier in self._bundle_ids:
            return self._bundle_ids[identifier]

        items = self._get_all("v1/bundleIds", {"filter[identifier]": identifier})
        match = next((b for b in items if b["attributes"]["identifier"] == identifier), None)
        if match is None:
            console.print(f"[yellow]App ID {identifier} not found, registering...")
            match = self._request(
                "POST",
                "v1/bundleIds",
                payload={
                    "data": {
                        "type": "bundleIds",
                        "attributes": {
                            "identifier": identifier,
                            "name": app_id_name(identifier),
                            "platform": BUNDLE_ID_PLATFORMS[platform],
                        },
                    }
                },
                expected=(201,),
            )["data"]

        bundle_resource_id = match["id"]
        self._sync_capabilities(bundle_resource_id, entitlements)
        self._bundle_ids[identifier] = bundle_resource_id
        return bundle_resource_id

    def _sync_capabilities(self, bundle_resource_id: str, entitlements: Dict[str, Any]) -> None:
        enabled = {
            item["attributes"]["capabilityType"]
            for item in self._get_all(f"v1/bundleIds/{bundle_resource_id}/bundleIdCapabilities", {})
        }
        for key, value in (entitlements or {}).items():
            attributes = capability_settings(key, value)
            if attributes is None or attributes["capabilityType"] in enabled:
                continue

            capability = attributes["capabilityType"]
            console.print(f"[cyan]Enabling {capability} for app ID")
            if capability in MANUAL_CONFIGURATION_CAPABILITIES:
                console.print(
                    f"[yellow]{MANUAL_CONFIGURATION_CAPABILITIES[capability]} details must be "
                    "configured on the Apple Developer Portal[/]"
                )
            self._request(
                "POST",
                "v1/bundleIdCapabilities",
                payload={
                    "data": {
                        "type": "bundleIdCapabilities",
                        "attributes": attributes,
                        "relationships": {
                            "bundleId": {"data": {"type": "bundleIds", "id": bundle_resource_id}}
                        },
                    }
                },
                expected=(201,),
            )
            enabled.add(capability)

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
        bundle_resource_id = self._ensure_bundle_id(bundle_id, entitlements, platform)

        relationships = {
            "bundleId": {"data": {"type": "bundleIds", "id": bundle_resource_id}},
            "certificates": {"data": [{"type": "certificates", "id": i} for i in certificate_ids]},
        }
        if devices:
            relationships["devices"] = {
                "data": [{"type": "devices", "id": d.id} for d in devices if d.id]
            }

        data = self._request(
            "POST",
            "v1/profiles",
            payload={
                "data": {
                    "type": "profiles",
                    "attributes": {
                        "name": name,
                        "profileType": profile_type(platform, distribution_type),
                    },
                    "relationships": relationships,
                }
            },
            expected=(201,),
        )["data"]

        try:
            profile = self._to_profile(data)
        except (ProfileParseError, KeyError, ValueError) as e:
            raise RemoteAPIError(f"Created profile {name} could not be read: {e}")
        profile.certificate_ids = list(certificate_ids)
        console.print(f"[green]Profile created:[/] {profile.name} ({profile.uuid})")
        return profile

    def update_profile(
        self,
        profile: Profile,
        entitlements: Dict[str, Any],
        certificate_ids: List[str],
        devices: List[Device],
    ) -> Profile:
        # Profiles cannot be edited through the API, regenerate under the same name
        self.delete_profile(profile)
        return self.create_profile(
            profile.name,
            profile.bundle_id,
            entitlements,
            profile.platform,
            profile.distribution_type,
            certificate_ids,
            devices,
        )

    def delete_profile(self, profile: Profile) -> None:
        if not profile.id:
            raise RemoteAPIError(f"Profile {profile.name} has no Developer Portal ID")
        console.print(f"[yellow]Deleting profile {profile.name}...")
        self._request("DELETE", f"v1/profiles/{profile.id}", expected=(204,))

    def list_devices(self, platform: Platform) -> List[Device]:
        items = self._get_all(
            "v1/devices",
            {"filter[platform]": DEVICE_PLATFORMS[platform], "filter[status]": "ENABLED"},
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
        data = self._request(
            "POST",
            "v1/devices",
            payload={
                "data": {
                    "type": "devices",
                    "attributes": {
                        "name": name,
                        "platform": DEVICE_PLATFORMS[platform],
                        "udid": udid,
                    },
                }
            },
            expected=(201,),
        )["data"]
        return Device(
            udid=data["attributes"]["udid"],
            name=data["attributes"].get("name", name),
            platform=platform,
            device_class=data["attributes"].get("deviceClass"),
            id=data["id"],
        )
