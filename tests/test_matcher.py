import pytest

from autoprov.src.core.entitlements import ICLOUD_CONTAINERS_KEY
from autoprov.src.core.models import DistributionType, Platform
from autoprov.src.matching.matcher import (
    CompatibilityMatcher,
    embeds_certificates,
    is_active,
    normalize_udid,
    provisions_devices,
)
from conftest import NOW, SERIAL, make_profile

BUNDLE_ID = "com.acme.app"


@pytest.fixture
def matcher():
    return CompatibilityMatcher(now=NOW)


def reason(matcher, profile, **overrides):
    kwargs = dict(
        platform=Platform.IOS,
        distribution_type=DistributionType.DEVELOPMENT,
        bundle_id=BUNDLE_ID,
        required_entitlements={},
        min_validity_days=0,
        owned_certificate_serials=[SERIAL],
        required_device_udids=None,
    )
    kwargs.update(overrides)
    return matcher.mismatch_reason(profile, **kwargs)


def test_matching_profile_has_no_reason(matcher):
    assert reason(matcher, make_profile("P1", BUNDLE_ID)) is None


def test_profile_expiring_within_min_validity_is_rejected(matcher):
    profile = make_profile("P1", BUNDLE_ID, days=10)
    assert reason(matcher, profile, min_validity_days=30).startswith("expires")
    assert reason(matcher, profile, min_validity_days=5) is None


def test_expired_profile_is_rejected(matcher):
    assert reason(matcher, make_profile("P1", BUNDLE_ID, days=-1)) is not None


def test_expiry_is_strict():
    profile = make_profile("P1", BUNDLE_ID, days=30)
    assert not is_active(profile, 30, NOW)
    assert is_active(profile, 29, NOW)


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"distribution_type": DistributionType.AD_HOC}, "distribution type"),
        ({"platform": Platform.TVOS}, "platform"),
        ({"bundle_id": "com.acme.other"}, "bundle ID"),
        ({"owned_certificate_serials": ["FFFF"]}, "certificate"),
        ({"required_entitlements": {"aps-environment": "development"}}, "entitlements"),
        ({"required_device_udids": ["00008030-000A"]}, "device"),
    ],
)
def test_mismatch_reasons(matcher, overrides, expected):
    assert expected in reason(matcher, make_profile("P1", BUNDLE_ID), **overrides)


def test_wildcard_profile_does_not_match_exact_bundle_id(matcher):
    assert reason(matcher, make_profile("P1", "com.acme.*")) is not None
    assert reason(matcher, make_profile("P1", "com.acme.*"), bundle_id="com.acme.*") is None


def test_xcode_managed_profile_is_rejected(matcher):
    assert reason(matcher, make_profile("P1", BUNDLE_ID, xcode_managed=True)) == "managed by Xcode"


def test_icloud_containers_are_a_subset(matcher):
    profile = make_profile(
        "P1", BUNDLE_ID, entitlements={ICLOUD_CONTAINERS_KEY: ["iCloud.a", "iCloud.b"]}
    )
    assert reason(matcher, profile, required_entitlements={ICLOUD_CONTAINERS_KEY: ["iCloud.a"]}) is None
    assert (
        reason(
            matcher,
            profile,
            required_entitlements={ICLOUD_CONTAINERS_KEY: ["iCloud.a", "iCloud.c"]},
        )
        is not None
    )


def test_profile_missing_keychain_access_group_is_rejected(matcher):
    required = {"keychain-access-groups": ["ABCDE12345.com.acme.shared"]}
    assert "entitlements" in reason(matcher, make_profile("P1", BUNDLE_ID), required_entitlements=required)

    profile = make_profile("P2", BUNDLE_ID, entitlements=dict(required))
    assert reason(matcher, profile, required_entitlements=required) is None


def test_profile_without_certificates_embeds_nothing():
    assert not embeds_certificates(make_profile("P1", BUNDLE_ID, serials=()), [SERIAL])
    assert embeds_certificates(make_profile("P1", BUNDLE_ID, serials=("1a2b3c",)), [SERIAL])


def test_device_udids_are_normalized():
    profile = make_profile("P1", BUNDLE_ID, devices=["00008030-001A2B3C4D5E802E"])
    assert normalize_udid("00008030-001a2b3c4d5e802e") == "00008030001a2b3c4d5e802e"
    assert provisions_devices(profile, ["00008030001A2B3C4D5E802E"])
    assert not provisions_devices(profile, ["00008030001A2B3C4D5E802E", "ffff"])
    assert provisions_devices(profile, [])


def test_all_devices_profile_provisions_any_device():
    profile = make_profile("P1", BUNDLE_ID, provisions_all_devices=True)
    assert provisions_devices(profile, ["anything"])

