from rich.text import Text

__version__ = "0.1.0"

APP_DESCRIPTION = "Keep signing certificates and provisioning profiles in sync with your app"

# rich_argparse style names
HELP_STYLES = {
    "argparse.args": "green",
    "argparse.groups": "bold magenta",
    "argparse.prog": "bold cyan",
    "argparse.metavar": "yellow",
}


def get_banner_text() -> Text:
    return Text("autoprov", style="bold green")
