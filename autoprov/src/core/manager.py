from typing import List, Optional, Sequence

from autoprov.logger import get_console
from autoprov.src.apple.credentials import Credentials
from autoprov.src.core.errors import AutoprovError
from autoprov.src.core.models import (
    CERTIFICATE_CLASS_BY_DISTRIBUTION,
    Certificate,
    CodesignAssets,
    DistributionType,
    requires_device_list,
)
from autoprov.src.core.reconciler import ReconciliationEngine, ensure_devices
from autoprov.src.matching.strategy import SigningStrategy, StrategySelector

console = get_console()


class CodesignManager:
    """Decides who signs and prepares the assets for that signer"""

    def __init__(
        self,
        project,
        credentials: Credentials,
        selector: StrategySelector,
        engine: ReconciliationEngine,
        distribution_type: DistributionType,
        min_validity_days: int = 0,
        device_udids: Optional[Sequence[str]] = None,
        include_ui_tests: bool = False,
        fallback_to_local_assets: bool = False,
    ):
        self.project = project
        self.credentials = credentials
        self.selector = selector
        self.engine = engine
        self.distribution_type = distribution_type
        self.min_validity_days = min_validity_days
        self.device_udids = list(device_udids or [])
        self.include_ui_tests = include_ui_tests
        self.fallback_to_local_assets = fallback_to_local_assets

    def prepare_codesigning(self) -> Optional[CodesignAssets]:
        """Returns the forced assets, or None when Xcode or local assets take over"""
        decision = self.selector.select(self.credentials, self.project)
        console.print(f"[bold]Code signing strategy:[/] {decision.strategy.value}")
        console.print(f"[cyan]{decision.reason}")
        if decision.warning is not None:
            console.print(f"[yellow]Warning: {decision.warning}[/]")

        if decision.strategy == SigningStrategy.XCODE_MANAGED:
            self._prepare_xcode_managed()
            return None

        layout = self.project.get_app_layout(self.include_ui_tests)
        try:
            assets = self.engine.ensure_assets(
                layout, self.distribution_type, self.min_validity_days, self.device_udids
            )
        except AutoprovError as e:
            if not self.fallback_to_local_assets:
                raise
            console.print(f"[yellow]Automatic provisioning failed: {e}[/]")
            console.print("[yellow]Falling back to the locally installed assets[/]")
            self._install_local_certificates()
            return None

        self.project.force_codesign_assets(self.distribution_type, assets)
        return assets

    def _local_certificates(self) -> List[Certificate]:
        certificate_class = CERTIFICATE_CLASS_BY_DISTRIBUTION[self.distribution_type]
        return [
            c
            for c in self.engine.inventory.certificates(certificate_class)
            if c.has_private_key and c.is_valid(self.engine.now)
        ]

    def _install_local_certificates(self) -> None:
        certificates = self._local_certificates()
        if not certificates:
            console.print("[yellow]No local certificates to install[/]")
        for certificate in certificates:
            self.engine.writer.install_certificate(certificate)

    def _prepare_xcode_managed(self) -> None:
        console.print("[blue]Preparing for Xcode managed signing...")
        self._install_local_certificates()
        if requires_device_list(self.distribution_type) and self.device_udids:
            ensure_devices(self.engine.client, self.project.platform(), self.device_udids)
