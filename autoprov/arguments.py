from pathlib import Path

from autoprov.src.apple.credentials import AuthSource
from autoprov.src.core.models import DistributionType


def add_ensure_arguments(parser):
    """Add all ensure-related arguments to an existing parser."""
    parser.add_argument("project", type=Path, help="Path to the project TOML file")

    parser.add_argument(
        "--distribution-type",
        "-d",
        choices=[d.value for d in DistributionType],
        help="Distribution to prepare signing for [default: from config, else development]",
    )

    parser.add_argument(
        "--min-validity-days",
        type=int,
        help="Reject profiles expiring within this many days [default: from config, else 0]",
    )

    parser.add_argument(
        "--include-ui-tests",
        action="store_true",
        help="Also provision the project's UI test targets (development only) [default: disabled]",
    )

    parser.add_argument(
        "--no-prefer-xcode-managed",
        action="store_false",
        dest="prefer_xcode_managed",
        default=None,
        help="Never let Xcode manage signing, even when the project asks for it [default: prefer]",
    )

    parser.add_argument(
        "--xcode-major-version",
        type=int,
        help="Major version of the Xcode that will sign [default: from config, else 15]",
    )

    parser.add_argument(
        "--auth",
        choices=[s.value for s in AuthSource],
        help="Force the Developer Portal authentication source [default: API key if configured]",
    )

    parser.add_argument(
        "--fallback-to-local-assets",
        action="store_true",
        default=None,
        help="Install local certificates when automatic provisioning fails [default: disabled]",
    )

    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only report what the local certificates and profiles cover [default: disabled]",
    )
