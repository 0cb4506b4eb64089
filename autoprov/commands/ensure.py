from typing import List

from rich.table import Table

from autoprov.logger import get_console
from autoprov.src.apple.credentials import (
    AuthSource,
    create_client,
    load_api_key_credential,
    load_apple_id_credential,
    select_credentials,
)
from autoprov.src.core.asset_writer import AssetWriter
from autoprov.src.core.errors import AutoprovError
from autoprov.src.core.inventory import AssetInventory, LocalCertificateSource, LocalProfileSource
from autoprov.src.core.manager import CodesignManager
from autoprov.src.core.models import CERTIFICATE_CLASS_BY_DISTRIBUTION, CodesignGroup, DistributionType
from autoprov.src.core.reconciler import ReconciliationEngine
from autoprov.src.matching.resolver import GroupResolver, filter_groups_for_team
from autoprov.src.matching.strategy import StrategySelector
from autoprov.src.project.project_file import Project
from autoprov.src.utils.config_loader import (
    get_cert_dir,
    get_keychain_settings,
    get_profiles_dir,
    get_signing_defaults,
)

console = get_console()


def _pick(value, default):
    return default if value is None else value


def display_groups(groups: List[CodesignGroup]) -> None:
    if not groups:
        console.print("[yellow]No local certificate and profiles can sign every target[/]")
        return

    table = Table(title="Local code signing groups")
    table.add_column("Tier")
    table.add_column("Certificate")
    table.add_column("Target")
    table.add_column("Profile")
    table.add_column("Expires")

    for group in groups:
        profiles = {**group.profiles_by_bundle_id, **group.ui_test_profiles_by_bundle_id}
        for bundle_id, profile in profiles.items():
            table.add_row(
                group.tier,
                f"{group.certificate.common_name} ({group.certificate.serial})",
                bundle_id,
                f"{profile.name} ({profile.uuid})",
                profile.expiry.strftime("%Y-%m-%d"),
            )
    console.print(table)


def run_dry_run(project: Project, inventory: AssetInventory, distribution_type, options) -> int:
    layout = project.get_app_layout(options["include_ui_tests"])
    resolver = GroupResolver(
        min_validity_days=options["min_validity_days"],
        device_udids=options["test_devices"],
        allow_xcode_managed=False,
    )
    groups = resolver.resolve(
        inventory.certificates(CERTIFICATE_CLASS_BY_DISTRIBUTION[distribution_type]),
        inventory.profiles(),
        layout,
        distribution_type,
    )
    if layout.team_id:
        groups = filter_groups_for_team(groups, layout.team_id)
    display_groups(groups)
    return 0 if groups else 1


def run_ensure_command(args) -> int:
    """Run the ensure command with the given arguments"""
    try:
        defaults = get_signing_defaults()
        distribution_value = _pick(args.distribution_type, defaults["distribution_type"])
        if distribution_value not in [d.value for d in DistributionType]:
            console.print(f"[red]Error:[/] Unknown distribution type: {distribution_value}")
            return 1
        distribution_type = DistributionType(distribution_value)
        options = {
            "min_validity_days": _pick(args.min_validity_days, defaults["min_profile_validity_days"]),
            "include_ui_tests": args.include_ui_tests,
            "test_devices": defaults["test_devices"],
        }
        if options["min_validity_days"] < 0:
            console.print("[red]Error:[/] --min-validity-days must not be negative")
            return 1

        if not args.project.exists():
            console.print(f"[red]Error:[/] Project file not found: {args.project}")
            return 1
        project = Project(args.project)

        console.print("[blue]Loading local certificates and profiles...")
        inventory = AssetInventory.from_sources(
            LocalCertificateSource(get_cert_dir()),
            LocalProfileSource(get_profiles_dir()),
        )

        if args.dry_run:
            return run_dry_run(project, inventory, distribution_type, options)

        auth_source = AuthSource(args.auth) if args.auth else None
        credentials = select_credentials(
            auth_source,
            api_key=load_api_key_credential(),
            apple_id=load_apple_id_credential(),
        )
        client = create_client(credentials, team_id=project.team_id or None)

        keychain = get_keychain_settings()
        writer = AssetWriter(
            keychain_path=keychain["path"],
            keychain_password=keychain["password"],
            profiles_dir=get_profiles_dir(),
            cert_dir=get_cert_dir(),
        )

        manager = CodesignManager(
            project=project,
            credentials=credentials,
            selector=StrategySelector(
                prefer_xcode_managed=_pick(args.prefer_xcode_managed, defaults["prefer_xcode_managed"]),
                xcode_major_version=_pick(args.xcode_major_version, defaults["xcode_major_version"]),
                min_validity_days=options["min_validity_days"],
            ),
            engine=ReconciliationEngine(inventory, client, writer),
            distribution_type=distribution_type,
            min_validity_days=options["min_validity_days"],
            device_udids=options["test_devices"],
            include_ui_tests=options["include_ui_tests"],
            fallback_to_local_assets=_pick(
                args.fallback_to_local_assets, defaults["fallback_to_local_assets"]
            ),
        )
        manager.prepare_codesigning()
    except AutoprovError as e:
        console.print(f"[red]Error:[/] {e}")
        return 1

    console.print("[bold green]Code signing assets are ready[/]")
    return 0
