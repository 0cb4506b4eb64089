from datetime import datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from autoprov.logger import get_console
from autoprov.src.core.entitlements import entitlements_contained
from autoprov.src.core.models import (
    AppLayout,
    Certificate,
    CodesignGroup,
    DistributionType,
    Profile,
    wildcard_bundle_id,
)
from autoprov.src.matching.matcher import embeds_certificates, is_active, provisions_devices

console = get_console()

SINGLE_WILDCARD = "single-wildcard"
XCODE_MANAGED = "xcode-managed"
NOT_XCODE_MANAGED = "not-xcode-managed"
FALLBACK = "fallback"

# Order in which groups are returned
TIER_PRIORITY = (NOT_XCODE_MANAGED, XCODE_MANAGED, SINGLE_WILDCARD, FALLBACK)

# requirement key -> (bundle id to match profiles against, required entitlements)
Requirements = Dict[str, Tuple[str, Dict[str, Any]]]
Candidates = Dict[str, List[Profile]]
Used = FrozenSet[str]


def specificity_key(profile: Profile):
    """Most specific pattern first, exact before wildcard, then smallest UUID"""
    return (-len(profile.bundle_id_prefix), profile.is_wildcard, profile.uuid)


def _unused(profiles: Iterable[Profile], used: Used) -> List[Profile]:
    return [p for p in profiles if p.uuid not in used]


def single_wildcard_tier(
    candidates: Candidates, used: Used
) -> Tuple[List[Dict[str, Profile]], Used]:
    """Profiles that alone match every target, exact patterns included"""
    groups = []
    seen = set()
    for profiles in candidates.values():
        for profile in profiles:
            if profile.uuid in used or profile.uuid in seen:
                continue
            seen.add(profile.uuid)
            if all(
                any(p.uuid == profile.uuid for p in others)
                for others in candidates.values()
            ):
                groups.append({key: profile for key in candidates})
                used = used | {profile.uuid}
    return groups, used


def reduction_tier(
    candidates: Candidates, used: Used, xcode_managed: bool
) -> Tuple[Optional[Dict[str, Profile]], Used]:
    """Assign targets that have a single possible profile until nothing changes.

    Only profiles whose Xcode-managed flag equals ``xcode_managed`` take part.
    The group is committed only when every target got a distinct profile.
    """
    pools = {
        key: [p for p in _unused(profiles, used) if p.xcode_managed == xcode_managed]
        for key, profiles in candidates.items()
    }
    if any(not pool for pool in pools.values()):
        return None, used

    assigned: Dict[str, Profile] = {}
    taken = set()
    progress = True
    while progress and len(assigned) < len(pools):
        progress = False
        for key, pool in pools.items():
            if key in assigned:
                continue
            remaining = [p for p in pool if p.uuid not in taken]
            if not remaining:
                return None, used
            if len(remaining) == 1:
                assigned[key] = remaining[0]
                taken.add(remaining[0].uuid)
                progress = True

    if len(assigned) != len(pools):
        return None, used

    mapping = {key: assigned[key] for key in candidates}
    return mapping, used | taken


def fallback_tier(
    candidates: Candidates, used: Used
) -> Tuple[Optional[Dict[str, Profile]], Used]:
    """First unused candidate per target, no profile used twice"""
    mapping = {}
    taken = set()
    for key, profiles in candidates.items():
        choice = next(
            (p for p in profiles if p.uuid not in used and p.uuid not in taken), None
        )
        if choice is None:
            return None, used
        mapping[key] = choice
        taken.add(choice.uuid)
    return mapping, used | taken


def build_tiers(candidates: Candidates) -> List[Tuple[str, Dict[str, Profile]]]:
    """Run every tier for one certificate and return groups in priority order"""
    if not candidates:
        return [(FALLBACK, {})]

    found: Dict[str, List[Dict[str, Profile]]] = {tier: [] for tier in TIER_PRIORITY}
    used: Used = frozenset()

    wildcard_groups, used = single_wildcard_tier(candidates, used)
    found[SINGLE_WILDCARD].extend(wildcard_groups)

    managed, used = reduction_tier(candidates, used, xcode_managed=True)
    if managed:
        found[XCODE_MANAGED].append(managed)

    not_managed, used = reduction_tier(candidates, used, xcode_managed=False)
    if not_managed:
        found[NOT_XCODE_MANAGED].append(not_managed)

    remaining, used = fallback_tier(candidates, used)
    if remaining:
        found[FALLBACK].append(remaining)

    return [(tier, mapping) for tier in TIER_PRIORITY for mapping in found[tier]]


class GroupResolver:
    """Finds certificate + profile groups able to sign a whole app layout"""

    def __init__(
        self,
        min_validity_days: int = 0,
        device_udids: Optional[Sequence[str]] = None,
        allow_xcode_managed: bool = True,
        now: Optional[datetime] = None,
    ):
        self.min_validity_days = min_validity_days
        self.device_udids = list(device_udids or [])
        self.allow_xcode_managed = allow_xcode_managed
        self._now = now

    @property
    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def profiles_for_certificate(
        self, certificate: Certificate, profiles: Iterable[Profile]
    ) -> List[Profile]:
        result = []
        seen = set()
        for profile in profiles:
            if profile.uuid in seen:
                continue
            if embeds_certificates(profile, [certificate.serial]):
                seen.add(profile.uuid)
                result.append(profile)
        return result

    def _is_selectable(
        self,
        profile: Profile,
        bundle_id: str,
        entitlements: Dict[str, Any],
        layout: AppLayout,
        distribution_type: DistributionType,
    ) -> bool:
        if not profile.matches_bundle_id(bundle_id):
            return False
        if profile.distribution_type != distribution_type:
            return False
        if layout.team_id and profile.team_id and profile.team_id != layout.team_id:
            return False
        if profile.platform != layout.platform:
            return False
        if profile.xcode_managed and not self.allow_xcode_managed:
            return False
        if not is_active(profile, self.min_validity_days, self.now):
            return False
        if not entitlements_contained(entitlements, profile.entitlements):
            return False
        return provisions_devices(profile, self.device_udids)

    def selectable_candidates(
        self,
        profiles: List[Profile],
        requirements: Requirements,
        layout: AppLayout,
        distribution_type: DistributionType,
    ) -> Optional[Candidates]:
        """Sorted candidates per target, or None if any target has none"""
        candidates = {}
        for key, (bundle_id, entitlements) in requirements.items():
            matching = [
                p
                for p in profiles
                if self._is_selectable(p, bundle_id, entitlements, layout, distribution_type)
            ]
            if not matching:
                return None
            candidates[key] = sorted(matching, key=specificity_key)
        return candidates

    def resolve(
        self,
        certificates: Iterable[Certificate],
        profiles: Sequence[Profile],
        layout: AppLayout,
        distribution_type: DistributionType,
    ) -> List[CodesignGroup]:
        requirements: Requirements = {
            bundle_id: (bundle_id, entitlements or {})
            for bundle_id, entitlements in layout.entitlements_by_bundle_id.items()
        }
        ui_requirements: Requirements = {}
        if layout.ui_test_bundle_ids and distribution_type == DistributionType.DEVELOPMENT:
            ui_requirements = {
                bundle_id: (wildcard_bundle_id(bundle_id), {})
                for bundle_id in layout.ui_test_bundle_ids
            }

        groups_by_tier: Dict[str, List[CodesignGroup]] = {t: [] for t in TIER_PRIORITY}
        seen_serials = set()
        for certificate in certificates:
            if certificate.serial in seen_serials or not certificate.has_private_key:
                continue
            seen_serials.add(certificate.serial)

            cert_profiles = self.profiles_for_certificate(certificate, profiles)
            candidates = self.selectable_candidates(
                cert_profiles, requirements, layout, distribution_type
            )
            if candidates is None:
                console.print(
                    f"[dim]Certificate {certificate.common_name} ({certificate.serial}) "
                    "has no matching profile for every target"
                )
                continue

            ui_profiles: Dict[str, Profile] = {}
            if ui_requirements:
                ui_candidates = self.selectable_candidates(
                    cert_profiles, ui_requirements, layout, distribution_type
                )
                ui_groups = build_tiers(ui_candidates) if ui_candidates else []
                if not ui_groups:
                    console.print(
                        f"[dim]Certificate {certificate.common_name} ({certificate.serial}) "
                        "has no matching profile for the UI test targets"
                    )
                    continue
                ui_profiles = ui_groups[0][1]

            for tier, mapping in build_tiers(candidates):
                groups_by_tier[tier].append(
                    CodesignGroup(
                        certificate=certificate,
                        profiles_by_bundle_id=mapping,
                        ui_test_profiles_by_bundle_id=dict(ui_profiles),
                        tier=tier,
                    )
                )

        return [group for tier in TIER_PRIORITY for group in groups_by_tier[tier]]


def filter_groups_for_team(groups: List[CodesignGroup], team_id: str) -> List[CodesignGroup]:
    return [g for g in groups if g.certificate.team_id == team_id]


def filter_groups_without_xcode_managed(groups: List[CodesignGroup]) -> List[CodesignGroup]:
    return [g for g in groups if not any(p.xcode_managed for p in g.all_profiles())]
