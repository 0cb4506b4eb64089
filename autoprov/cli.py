import argparse
import sys

from rich.panel import Panel
from rich.text import Text
from rich_argparse import RichHelpFormatter

from autoprov.arguments import add_ensure_arguments
from autoprov.logger import get_console
from autoprov.src.constants.cli_constants import (
    __version__,
    APP_DESCRIPTION,
    HELP_STYLES,
    get_banner_text,
)


class AutoprovHelpFormatter(RichHelpFormatter):
    """Help formatter with the autoprov color theme."""

    styles = {**RichHelpFormatter.styles, **HELP_STYLES}

    def __init__(self, prog):
        super().__init__(prog, max_help_position=32, width=100)


def display_banner():
    body = Text.assemble(get_banner_text(), "  ", (f"v{__version__}", "blue"))
    get_console().print(
        Panel.fit(body, subtitle=Text(APP_DESCRIPTION, style="italic"), border_style="cyan")
    )


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="autoprov",
        description=f"autoprov: {APP_DESCRIPTION}",
        formatter_class=AutoprovHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"autoprov {__version__}")

    subparsers = parser.add_subparsers(dest="command", title="commands")

    ensure_parser = subparsers.add_parser(
        "ensure",
        help="Make sure code signing assets exist for a project",
        formatter_class=AutoprovHelpFormatter,
        description="Find or create the certificate and provisioning profiles every target of the project needs.",
    )
    add_ensure_arguments(ensure_parser)
    return parser


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command == "ensure":
        from autoprov.commands.ensure import run_ensure_command

        return run_ensure_command(args)

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
