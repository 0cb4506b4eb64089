from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from autoprov.logger import get_console
from autoprov.src.apple.client import RemoteProvisioningClient, profile_name
from autoprov.src.core.entitlements import only_containers_missing, unsupported_entitlement_keys
from autoprov.src.core.errors import ResolutionIncompleteError, UnsupportedEntitlementError
from autoprov.src.core.inventory import AssetInventory
from autoprov.src.core.models import (
    CERTIFICATE_CLASS_BY_DISTRIBUTION,
    AppLayout,
    Certificate,
    CertificateClass,
    CodesignAssets,
    Device,
    DistributionType,
    Platform,
    Profile,
    Target,
    requires_device_list,
    wildcard_bundle_id,
)
from autoprov.src.matching.matcher import CompatibilityMatcher, normalize_udid
from autoprov.src.matching.resolver import (
    GroupResolver,
    filter_groups_for_team,
    filter_groups_without_xcode_managed,
)

console = get_console()


def ensure_devices(
    client: RemoteProvisioningClient, platform: Platform, device_udids: Sequence[str]
) -> List[Device]:
    """Register the test devices the Developer Portal does not know yet.

    Returns every enabled device of the platform, new ones included.
    """
    devices = client.list_devices(platform)
    registered = {normalize_udid(d.udid) for d in devices}
    for udid in device_udids:
        if normalize_udid(udid) in registered:
            continue
        devices.append(client.register_device(udid, platform, name=udid))
        registered.add(normalize_udid(udid))
    return devices


class ReconciliationEngine:
    """Makes sure a certificate and profiles exist for every target of an app.

    Local assets are tried first. Only when they fall short is the remote
    authority listed, and only what is still missing gets created. Running
    it twice in a row performs no remote mutation the second time.
    """

    def __init__(
        self,
        inventory: AssetInventory,
        client: RemoteProvisioningClient,
        writer,
        now: Optional[datetime] = None,
    ):
        self.inventory = inventory
        self.client = client
        self.writer = writer
        self._now = now
        self.matcher = CompatibilityMatcher(now=now)

    @property
    def now(self) -> datetime:
        return self._now or datetime.now(timezone.utc)

    def ensure_assets(
        self,
        layout: AppLayout,
        distribution_type: DistributionType,
        min_validity_days: int = 0,
        device_udids: Optional[Sequence[str]] = None,
    ) -> CodesignAssets:
        certificate_class = CERTIFICATE_CLASS_BY_DISTRIBUTION[distribution_type]
        if not requires_device_list(distribution_type):
            device_udids = []
        device_udids = list(device_udids or [])
        resolver = GroupResolver(
            min_validity_days=min_validity_days,
            device_udids=device_udids,
            allow_xcode_managed=False,
            now=self._now,
        )

        console.print(f"\n[bold blue]Checking {distribution_type.value} code signing assets[/]")
        assets = self._resolve(resolver, layout, distribution_type, certificate_class)
        if assets is not None:
            console.print("[green]Installed certificates and profiles cover every target[/]")
            return self._persist(assets)

        residual = self._residual(layout, distribution_type, min_validity_days, device_udids)
        self._check_supported(residual)

        console.print("[yellow]Local assets are incomplete, checking the Developer Portal...[/]")
        self.inventory.merge(
            self.client.list_certificates(certificate_class),
            self.client.list_profiles(layout.platform, distribution_type),
        )
        assets = self._resolve(resolver, layout, distribution_type, certificate_class)
        if assets is not None:
            console.print("[green]Developer Portal assets cover every target[/]")
            return self._persist(assets)

        certificate = self._ensure_certificate(certificate_class, layout.team_id)
        certificate_ids = [
            c.id for c in self._possessed(certificate_class, layout.team_id) if c.id
        ]
        devices: List[Device] = []
        if requires_device_list(distribution_type):
            devices = ensure_devices(self.client, layout.platform, device_udids)

        residual = self._residual(
            layout, distribution_type, min_validity_days, device_udids, certificate
        )
        for target in residual.targets():
            self._ensure_profile(
                target,
                layout.platform,
                distribution_type,
                certificate,
                certificate_ids,
                devices,
                min_validity_days,
                device_udids,
            )

        assets = self._resolve(resolver, layout, distribution_type, certificate_class)
        if assets is None:
            unresolved = self._residual(
                layout, distribution_type, min_validity_days, device_udids, certificate
            )
            bundle_ids = [t.bundle_id for t in unresolved.targets()]
            raise ResolutionIncompleteError(bundle_ids or [t.bundle_id for t in layout.targets()])

        return self._persist(assets)

    def _resolve(
        self,
        resolver: GroupResolver,
        layout: AppLayout,
        distribution_type: DistributionType,
        certificate_class: CertificateClass,
    ) -> Optional[CodesignAssets]:
        groups = resolver.resolve(
            self.inventory.certificates(certificate_class),
            self.inventory.profiles(),
            layout,
            distribution_type,
        )
        if layout.team_id:
            groups = filter_groups_for_team(groups, layout.team_id)
        groups = filter_groups_without_xcode_managed(groups)
        for group in groups:
            if group.certificate.is_valid(self.now):
                console.print(
                    f"[cyan]Using {group.tier} group with certificate "
                    f"{group.certificate.common_name} ({group.certificate.serial})"
                )
                return CodesignAssets.from_group(group)
        return None

    def _persist(self, assets: CodesignAssets) -> CodesignAssets:
        self.writer.write(assets)
        return assets

    def _possessed(self, certificate_class: CertificateClass, team_id: str) -> List[Certificate]:
        return [
            c
            for c in self.inventory.certificates(certificate_class)
            if c.has_private_key
            and c.is_valid(self.now)
            and (not team_id or c.team_id == team_id)
        ]

    def _residual(
        self,
        layout: AppLayout,
        distribution_type: DistributionType,
        min_validity_days: int,
        device_udids: List[str],
        certificate: Optional[Certificate] = None,
    ) -> AppLayout:
        """Copy of the layout without the targets a profile already covers"""
        residual = AppLayout(
            team_id=layout.team_id,
            platform=layout.platform,
            entitlements_by_bundle_id=dict(layout.entitlements_by_bundle_id),
            ui_test_bundle_ids=list(layout.ui_test_bundle_ids),
        )
        if distribution_type != DistributionType.DEVELOPMENT:
            # UI tests are only signed for development
            residual.ui_test_bundle_ids = []

        if certificate is None:
            possessed = self._possessed(
                CERTIFICATE_CLASS_BY_DISTRIBUTION[distribution_type], layout.team_id
            )
            if not possessed:
                return residual
            certificate = possessed[0]

        satisfied = [
            target.bundle_id
            for target in residual.targets()
            if self._find_profile(
                target, layout.platform, distribution_type, certificate, min_validity_days, device_udids
            )
        ]
        residual.remove_satisfied(satisfied)
        return residual

    def _match_id(self, target: Target) -> str:
        return wildcard_bundle_id(target.bundle_id) if target.is_ui_test else target.bundle_id

    def _find_profile(
        self,
        target: Target,
        platform: Platform,
        distribution_type: DistributionType,
        certificate: Certificate,
        min_validity_days: int,
        device_udids: List[str],
    ) -> Optional[Profile]:
        for profile in self.inventory.profiles():
            if self.matcher.matches(
                profile,
                platform,
                distribution_type,
                self._match_id(target),
                target.entitlements,
                min_validity_days,
                [certificate.serial],
                device_udids,
            ):
                return profile
        return None

    def _check_supported(self, residual: AppLayout) -> None:
        unsupported: Dict[str, List[str]] = {}
        for bundle_id, entitlements in residual.entitlements_by_bundle_id.items():
            keys = unsupported_entitlement_keys(entitlements)
            if keys:
                unsupported[bundle_id] = keys
        if unsupported:
            raise UnsupportedEntitlementError(unsupported)

    def _ensure_certificate(self, certificate_class: CertificateClass, team_id: str) -> Certificate:
        for certificate in self._possessed(certificate_class, team_id):
            if certificate.id:
                return certificate

        console.print(
            f"[yellow]No {certificate_class.value} certificate with a private key "
            "is registered on the Developer Portal, creating one...[/]"
        )
        certificate = self.client.create_certificate(certificate_class)
        return self.inventory.add_certificate(certificate)

    def _ensure_profile(
        self,
        target: Target,
        platform: Platform,
        distribution_type: DistributionType,
        certificate: Certificate,
        certificate_ids: List[str],
        devices: List[Device],
        min_validity_days: int,
        device_udids: List[str],
    ) -> Profile:
        bundle_id = self._match_id(target)
        entitlements = {} if target.is_ui_test else dict(target.entitlements)
        name = profile_name(platform, distribution_type, bundle_id)

        console.print(f"\n[blue]Checking profile for {bundle_id}")
        existing = self.client.find_profile(name, platform, distribution_type)
        if existing is None:
            profile = self.client.create_profile(
                name, bundle_id, entitlements, platform, distribution_type, certificate_ids, devices
            )
        else:
            reason = self.matcher.mismatch_reason(
                existing,
                platform,
                distribution_type,
                bundle_id,
                entitlements,
                min_validity_days,
                [certificate.serial],
                device_udids,
            )
            if reason is None:
                console.print(f"[green]Profile {name} is in sync with the project")
                profile = existing
            elif only_containers_missing(entitlements, existing.entitlements):
                console.print(f"[yellow]Profile {name} misses iCloud containers, regenerating...")
                profile = self.client.update_profile(existing, entitlements, certificate_ids, devices)
                self.inventory.remove_profile(existing.uuid)
            else:
                console.print(f"[yellow]Profile {name} is out of sync ({reason}), recreating...")
                self.client.delete_profile(existing)
                self.inventory.remove_profile(existing.uuid)
                profile = self.client.create_profile(
                    name, bundle_id, entitlements, platform, distribution_type, certificate_ids, devices
                )

        return self.inventory.add_profile(profile)
