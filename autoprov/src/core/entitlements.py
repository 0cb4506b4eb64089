from typing import Any, Dict, List, Optional

ICLOUD_CONTAINERS_KEY = "com.apple.developer.icloud-container-identifiers"
UBIQUITY_CONTAINERS_KEY = "com.apple.developer.ubiquity-container-identifiers"
PARENT_APPLICATION_IDS_KEY = "com.apple.developer.parent-application-identifiers"
SIGN_IN_WITH_APPLE_KEY = "com.apple.developer.applesignin"
DATA_PROTECTION_KEY = "com.apple.developer.default-data-protection"

IGNORED = "-ignored-"
PROFILE_ATTACHED = "-profile-attached-"

# Entitlement key -> App Store Connect capability type
CAPABILITY_BY_KEY = {
    "com.apple.security.application-groups": "APP_GROUPS",
    "com.apple.developer.in-app-payments": "APPLE_PAY",
    "com.apple.developer.associated-domains": "ASSOCIATED_DOMAINS",
    "com.apple.developer.healthkit": "HEALTHKIT",
    "com.apple.developer.homekit": "HOMEKIT",
    "com.apple.developer.networking.HotspotConfiguration": "HOT_SPOT",
    "com.apple.InAppPurchase": "IN_APP_PURCHASE",
    "inter-app-audio": "INTER_APP_AUDIO",
    "com.apple.developer.networking.multipath": "MULTIPATH",
    "com.apple.developer.networking.networkextension": "NETWORK_EXTENSIONS",
    "com.apple.developer.nfc.readersession.formats": "NFC_TAG_READING",
    "com.apple.developer.networking.vpn.api": "PERSONAL_VPN",
    "aps-environment": "PUSH_NOTIFICATIONS",
    "com.apple.developer.siri": "SIRIKIT",
    SIGN_IN_WITH_APPLE_KEY: "APPLE_ID_AUTH",
    "com.apple.developer.on-demand-install-capable": "ON_DEMAND_INSTALL_CAPABLE",
    "com.apple.developer.pass-type-identifiers": "WALLET",
    "com.apple.external-accessory.wireless-configuration": "WIRELESS_ACCESSORY_CONFIGURATION",
    DATA_PROTECTION_KEY: "DATA_PROTECTION",
    "com.apple.developer.icloud-services": "ICLOUD",
    "com.apple.developer.authentication-services.autofill-credential-provider": "AUTOFILL_CREDENTIAL_PROVIDER",
    "com.apple.developer.networking.wifi-info": "ACCESS_WIFI_INFORMATION",
    "com.apple.developer.ClassKit-environment": "CLASSKIT",
    "com.apple.developer.coremedia.hls.low-latency": "COREMEDIA_HLS_LOW_LATENCY",
    ICLOUD_CONTAINERS_KEY: IGNORED,
    UBIQUITY_CONTAINERS_KEY: IGNORED,
    PARENT_APPLICATION_IDS_KEY: IGNORED,
    # Only available on profiles generated manually on the Developer Portal
    "com.apple.developer.contacts.notes": PROFILE_ATTACHED,
    "com.apple.developer.carplay-audio": PROFILE_ATTACHED,
    "com.apple.developer.carplay-communication": PROFILE_ATTACHED,
    "com.apple.developer.carplay-charging": PROFILE_ATTACHED,
    "com.apple.developer.carplay-maps": PROFILE_ATTACHED,
    "com.apple.developer.carplay-parking": PROFILE_ATTACHED,
    "com.apple.developer.carplay-quick-ordering": PROFILE_ATTACHED,
    "com.apple.developer.exposure-notification": PROFILE_ATTACHED,
}

# App Clips cannot be registered through the API
UNSUPPORTED_CAPABILITIES = {
    "ON_DEMAND_INSTALL_CAPABLE": "On Demand Install Capable (App Clips)",
}

# Capabilities enabled on the app ID but configured by hand afterwards
MANUAL_CONFIGURATION_CAPABILITIES = {
    "APP_GROUPS": "App Groups",
    "APPLE_PAY": "Apple Pay Payment Processing",
    "ICLOUD": "iCloud",
    "APPLE_ID_AUTH": "Sign In with Apple",
}

DATA_PROTECTION_LEVELS = {
    "NSFileProtectionComplete": "COMPLETE_PROTECTION",
    "NSFileProtectionCompleteUnlessOpen": "PROTECTED_UNLESS_OPEN",
    "NSFileProtectionCompleteUntilFirstUserAuthentication": "PROTECTED_UNTIL_FIRST_USER_AUTH",
}


def icloud_containers(entitlements: Optional[Dict[str, Any]]) -> List[str]:
    if not entitlements:
        return []
    return list(entitlements.get(ICLOUD_CONTAINERS_KEY) or [])


def find_missing_containers(
    project_entitlements: Optional[Dict[str, Any]],
    profile_entitlements: Optional[Dict[str, Any]],
) -> List[str]:
    """Return the iCloud containers the project needs but the profile lacks"""
    project_containers = icloud_containers(project_entitlements)
    if not project_containers:
        return []
    if not profile_entitlements or ICLOUD_CONTAINERS_KEY not in profile_entitlements:
        return project_containers

    profile_containers = set(icloud_containers(profile_entitlements))
    return [c for c in project_containers if c not in profile_containers]


def entitlements_contained(
    required: Optional[Dict[str, Any]], available: Optional[Dict[str, Any]]
) -> bool:
    """Every required key must be present with an equal value.

    iCloud container identifiers are compared as a subset instead.
    """
    available = available or {}
    for key, value in (required or {}).items():
        if key == ICLOUD_CONTAINERS_KEY:
            if find_missing_containers(required, available):
                return False
            continue
        if key not in available or available[key] != value:
            return False
    return True


def only_containers_missing(
    required: Optional[Dict[str, Any]], available: Optional[Dict[str, Any]]
) -> bool:
    """True when the profile fails containment only because of iCloud containers"""
    if not find_missing_containers(required, available):
        return False
    rest = {k: v for k, v in (required or {}).items() if k != ICLOUD_CONTAINERS_KEY}
    return entitlements_contained(rest, available)


def unsupported_entitlement_keys(entitlements: Optional[Dict[str, Any]]) -> List[str]:
    """Keys that a profile created through the API can never carry"""
    keys = []
    for key in entitlements or {}:
        capability = CAPABILITY_BY_KEY.get(key)
        if capability == PROFILE_ATTACHED or capability in UNSUPPORTED_CAPABILITIES:
            keys.append(key)
    return sorted(keys)


def capability_settings(key: str, value: Any) -> Optional[dict]:
    """Build the bundleIdCapabilities payload attributes for one entitlement.

    Returns None for keys that do not appear on the Developer Portal.
    """
    capability = CAPABILITY_BY_KEY.get(key)
    if capability is None or capability in (IGNORED, PROFILE_ATTACHED):
        return None

    settings = []
    if capability == "ICLOUD":
        settings.append({"key": "ICLOUD_VERSION", "options": [{"key": "XCODE_6"}]})
    elif capability == "DATA_PROTECTION":
        level = DATA_PROTECTION_LEVELS.get(value)
        if level is None:
            raise ValueError(f"Unknown data protection level: {value}")
        settings.append(
            {"key": "DATA_PROTECTION_PERMISSION_LEVEL", "options": [{"key": level}]}
        )
    elif capability == "APPLE_ID_AUTH":
        settings.append(
            {
                "key": "APPLE_ID_AUTH_APP_CONSENT",
                "options": [{"key": "PRIMARY_APP_CONSENT"}],
            }
        )

    return {"capabilityType": capability, "settings": settings}
