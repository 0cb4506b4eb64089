from pathlib import Path
from typing import Any, Dict

import toml

from autoprov.logger import get_console
from autoprov.src.core.errors import ConfigurationError
from autoprov.src.core.models import AppLayout, CodesignAssets, DistributionType, Platform

console = get_console()


class Project:
    """App project described by a TOML file.

    Example::

        team_id = "ABCDE12345"
        platform = "iOS"
        signing_managed_automatically = false
        ui_test_bundle_ids = ["com.acme.app.uitests"]

        [targets."com.acme.app".entitlements]
        aps-environment = "development"

    Forced code signing settings are written back under ``[codesign.<distribution>]``.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        try:
            self.data: Dict[str, Any] = toml.load(self.path)
        except (OSError, toml.TomlDecodeError) as e:
            raise ConfigurationError(f"Failed to load project {self.path}: {e}")

        if not self.data.get("targets"):
            raise ConfigurationError(f"Project {self.path} defines no [targets]")

    @property
    def team_id(self) -> str:
        return self.data.get("team_id", "")

    def platform(self) -> Platform:
        value = self.data.get("platform", Platform.IOS.value)
        for platform in Platform:
            if platform.value.lower() == str(value).lower():
                return platform
        raise ConfigurationError(f"Unsupported platform in {self.path}: {value}")

    def is_signing_managed_automatically(self) -> bool:
        value = self.data.get("signing_managed_automatically")
        if value is None:
            raise ConfigurationError("signing_managed_automatically is not set for the project")
        return bool(value)

    def get_app_layout(self, include_ui_tests: bool) -> AppLayout:
        entitlements_by_bundle_id = {
            bundle_id: dict(target.get("entitlements", {}))
            for bundle_id, target in self.data["targets"].items()
        }
        ui_test_bundle_ids = list(self.data.get("ui_test_bundle_ids", [])) if include_ui_tests else []
        return AppLayout(
            team_id=self.team_id,
            platform=self.platform(),
            entitlements_by_bundle_id=entitlements_by_bundle_id,
            ui_test_bundle_ids=ui_test_bundle_ids,
        )

    def force_codesign_assets(self, distribution_type: DistributionType, assets: CodesignAssets) -> None:
        """Pin the signing identity and profiles each target must use"""
        codesign = self.data.setdefault("codesign", {})
        codesign[distribution_type.value] = {
            "identity": assets.certificate.common_name,
            "certificate_serial": assets.certificate.serial,
            "team_id": assets.certificate.team_id,
            "profiles": {
                bundle_id: {"uuid": profile.uuid, "name": profile.name}
                for bundle_id, profile in {
                    **assets.profiles_by_bundle_id,
                    **assets.ui_test_profiles_by_bundle_id,
                }.items()
            },
        }
        try:
            with open(self.path, "w") as f:
                toml.dump(self.data, f)
        except OSError as e:
            raise ConfigurationError(f"Failed to update project {self.path}: {e}")
        console.print(f"[green]Code signing settings written to {self.path}")
