import pytest

from autoprov.src.core.entitlements import (
    DATA_PROTECTION_KEY,
    ICLOUD_CONTAINERS_KEY,
    capability_settings,
    entitlements_contained,
    find_missing_containers,
    only_containers_missing,
    unsupported_entitlement_keys,
)

CONTAINERS = {ICLOUD_CONTAINERS_KEY: ["iCloud.com.acme.a", "iCloud.com.acme.b"]}


def test_equal_values_are_contained():
    assert entitlements_contained({"aps-environment": "development"}, {"aps-environment": "development"})
    assert not entitlements_contained({"aps-environment": "development"}, {"aps-environment": "production"})
    assert not entitlements_contained({"aps-environment": "development"}, {})
    assert entitlements_contained(None, None)


def test_keychain_access_groups_must_match():
    required = {"keychain-access-groups": ["ABCDE12345.com.acme.shared"]}
    assert not entitlements_contained(required, {"get-task-allow": True})
    assert not entitlements_contained(required, {"keychain-access-groups": ["ABCDE12345.*"]})
    assert entitlements_contained(required, {"keychain-access-groups": ["ABCDE12345.com.acme.shared"]})


def test_missing_containers_are_reported_in_project_order():
    profile = {ICLOUD_CONTAINERS_KEY: ["iCloud.com.acme.b"]}
    assert find_missing_containers(CONTAINERS, profile) == ["iCloud.com.acme.a"]
    assert find_missing_containers(CONTAINERS, {}) == CONTAINERS[ICLOUD_CONTAINERS_KEY]
    assert find_missing_containers({}, profile) == []


def test_only_containers_missing():
    required = {**CONTAINERS, "aps-environment": "development"}
    profile = {ICLOUD_CONTAINERS_KEY: ["iCloud.com.acme.a"], "aps-environment": "development"}
    assert only_containers_missing(required, profile)
    assert not only_containers_missing(required, {**profile, "aps-environment": "production"})
    assert not only_containers_missing(required, {**profile, **CONTAINERS})


def test_unsupported_keys_are_sorted():
    entitlements = {
        "com.apple.developer.on-demand-install-capable": True,
        "com.apple.developer.carplay-maps": True,
        "aps-environment": "development",
    }
    assert unsupported_entitlement_keys(entitlements) == [
        "com.apple.developer.carplay-maps",
        "com.apple.developer.on-demand-install-capable",
    ]


def test_capability_settings():
    assert capability_settings("aps-environment", "development") == {
        "capabilityType": "PUSH_NOTIFICATIONS",
        "settings": [],
    }
    assert capability_settings(ICLOUD_CONTAINERS_KEY, []) is None
    assert capability_settings("com.acme.custom", True) is None

    settings = capability_settings(DATA_PROTECTION_KEY, "NSFileProtectionComplete")
    assert settings["settings"][0]["options"] == [{"key": "COMPLETE_PROTECTION"}]


def test_unknown_data_protection_level():
    with pytest.raises(ValueError):
        capability_settings(DATA_PROTECTION_KEY, "NSFileProtectionNone")
