from abc import ABC, abstractmethod
from typing import Any, Dict, FrozenSet, List, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from autoprov.src.core.errors import RemoteAPIError
from autoprov.src.core.models import (
    Certificate,
    CertificateClass,
    Device,
    DistributionType,
    Platform,
    Profile,
)

REQUEST_TIMEOUT = 60
READ_ATTEMPTS = 3
READ_BACKOFF = 1.0
RETRYABLE_STATUS_CODES = (429, 500, 502, 503, 504)

# (platform, distribution type) -> App Store Connect profile type
PROFILE_TYPES = {
    (Platform.IOS, DistributionType.DEVELOPMENT): "IOS_APP_DEVELOPMENT",
    (Platform.IOS, DistributionType.APP_STORE): "IOS_APP_STORE",
    (Platform.IOS, DistributionType.AD_HOC): "IOS_APP_ADHOC",
    (Platform.IOS, DistributionType.ENTERPRISE): "IOS_APP_INHOUSE",
    (Platform.TVOS, DistributionType.DEVELOPMENT): "TVOS_APP_DEVELOPMENT",
    (Platform.TVOS, DistributionType.APP_STORE): "TVOS_APP_STORE",
    (Platform.TVOS, DistributionType.AD_HOC): "TVOS_APP_ADHOC",
    (Platform.TVOS, DistributionType.ENTERPRISE): "TVOS_APP_INHOUSE",
    (Platform.MACOS, DistributionType.DEVELOPMENT): "MAC_APP_DEVELOPMENT",
    (Platform.MACOS, DistributionType.APP_STORE): "MAC_APP_STORE",
    (Platform.MACOS, DistributionType.ENTERPRISE): "MAC_APP_DIRECT",
}

# Bundle IDs for tvOS apps are registered as iOS
BUNDLE_ID_PLATFORMS = {
    Platform.IOS: "IOS",
    Platform.TVOS: "IOS",
    Platform.MACOS: "MAC_OS",
}


def profile_type(platform: Platform, distribution_type: DistributionType) -> str:
    try:
        return PROFILE_TYPES[(platform, distribution_type)]
    except KeyError:
        raise RemoteAPIError(
            f"No {distribution_type.value} profiles exist for {platform.value}"
        )


def profile_name(platform: Platform, distribution_type: DistributionType, bundle_id: str) -> str:
    """Name of the profiles created by autoprov, '*' is not allowed in names"""
    prefix = ""
    if bundle_id.endswith(".*"):
        bundle_id = bundle_id[:-2]
        prefix = "Wildcard "
    return f"{prefix}autoprov {platform.value} {distribution_type.value} - ({bundle_id})"


def app_id_name(bundle_id: str) -> str:
    prefix = "Wildcard " if bundle_id.endswith(".*") else ""
    for char in ".-_*":
        bundle_id = bundle_id.replace(char, " ")
    return f"{prefix}autoprov {bundle_id}".rstrip()


def create_retrying_session(allowed_methods: FrozenSet[str] = frozenset({"GET"})) -> requests.Session:
    """Session retrying reads on connection errors, 429 and 5xx.

    Only list the methods whose requests are safe to send twice.
    """
    session = requests.Session()
    retry = Retry(
        total=READ_ATTEMPTS - 1,
        backoff_factor=READ_BACKOFF,
        status_forcelist=RETRYABLE_STATUS_CODES,
        allowed_methods=allowed_methods,
        raise_on_status=False,
    )
    session.mount("https://", HTTPAdapter(max_retries=retry))
    return session


class RemoteProvisioningClient(ABC):
    """CRUD boundary to the Developer Portal"""

    @abstractmethod
    def list_certificates(self, certificate_class: CertificateClass) -> List[Certificate]:
        pass

    @abstractmethod
    def create_certificate(self, certificate_class: CertificateClass) -> Certificate:
        pass

    @abstractmethod
    def list_profiles(
        self, platform: Platform, distribution_type: DistributionType
    ) -> List[Profile]:
        pass

    @abstractmethod
    def find_profile(
        self, name: str, platform: Platform, distribution_type: DistributionType
    ) -> Optional[Profile]:
        pass

    @abstractmethod
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
        pass

    @abstractmethod
    def update_profile(
        self,
        profile: Profile,
        entitlements: Dict[str, Any],
        certificate_ids: List[str],
        devices: List[Device],
    ) -> Profile:
        pass

    @abstractmethod
    def delete_profile(self, profile: Profile) -> None:
        pass

    @abstractmethod
    def list_devices(self, platform: Platform) -> List[Device]:
        pass

    @abstractmethod
    def register_device(self, udid: str, platform: Platform, name: str) -> Device:
        pass
