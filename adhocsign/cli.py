import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv
from rich.panel import Panel
from rich.text import Text
from rich_argparse import RichHelpFormatter

from adhocsign.arguments import add_signing_arguments
from adhocsign.logger import get_console
from adhocsign.src.constants.cli_constants import (
    __version__,
    get_banner_text,
    APP_DESCRIPTION,
)


class AdhocSignHelpFormatter(RichHelpFormatter):
    """Help formatter using the adhocsign colour scheme"""

    styles = {
        **RichHelpFormatter.styles,
        "argparse.args": "green",
        "argparse.groups": "bold magenta",
        "argparse.metavar": "yellow",
        "argparse.prog": "bold cyan",
    }

    def __init__(self, prog):
        super().__init__(prog, max_help_position=30, width=100)


def display_banner():
    """Display a banner above the help output."""
    console = get_console()
    version_info = Text(f"v{__version__}", style="blue")
    tagline = Text(APP_DESCRIPTION, style="italic")

    panel = Panel.fit(
        Text.assemble(get_banner_text(), "\n", tagline, "\n", version_info),
        border_style="green",
        padding=(1, 2),
    )
    console.print(panel)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="adhocsign",
        description=f"adhocsign: {APP_DESCRIPTION}",
        formatter_class=AdhocSignHelpFormatter,
        add_help=True,
    )
    parser.add_argument(
        "--version", action="version", version=f"adhocsign {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command")

    sign_parser = subparsers.add_parser(
        "sign",
        help="Resign an .app bundle",
        formatter_class=AdhocSignHelpFormatter,
        description="Resign an .app bundle with a PEM identity and provisioning profiles.",
    )
    add_signing_arguments(sign_parser)

    entitlements_parser = subparsers.add_parser(
        "entitlements",
        help="Show the entitlements embedded in a Mach-O binary",
        formatter_class=AdhocSignHelpFormatter,
    )
    entitlements_parser.add_argument("binary", type=Path, help="Path to the binary")

    profile_parser = subparsers.add_parser(
        "profile",
        help="Show the entitlements of a provisioning profile",
        formatter_class=AdhocSignHelpFormatter,
    )
    profile_parser.add_argument(
        "profile", type=Path, help="Path to the .mobileprovision file"
    )

    return parser


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv

    # Display the banner before the help text
    if not argv or "-h" in argv or "--help" in argv:
        display_banner()

    load_dotenv()
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command == "sign":
        from adhocsign.commands.sign import run_sign_command

        return run_sign_command(args)
    elif args.command == "entitlements":
        from adhocsign.commands.inspect import run_entitlements_command

        return run_entitlements_command(args)
    elif args.command == "profile":
        from adhocsign.commands.inspect import run_profile_command

        return run_profile_command(args)
    else:
        parser.print_help()
        return 1


if __name__ == "__main__":
    sys.exit(main())
