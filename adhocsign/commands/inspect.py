import json
from pathlib import Path

from rich.syntax import Syntax

from adhocsign.logger import get_console
from adhocsign.src.core.errors import AdhocSignError
from adhocsign.src.ipa.provisioning_profile import ProvisioningProfile
from adhocsign.src.macho.entitlements_reader import MachOEntitlementsReader


def run_entitlements_command(args) -> int:
    """Print the entitlements embedded in a binary's code signature"""
    console = get_console()
    binary: Path = args.binary

    try:
        xml = MachOEntitlementsReader(binary).read_entitlements()
    except AdhocSignError as e:
        console.print(f"[red]Error reading binary: {e}[/red]")
        return 1

    if xml is None:
        console.print(f"[yellow]No entitlements found in {binary}[/]")
        return 0

    console.print(Syntax(xml, "xml", word_wrap=True))
    return 0


def run_profile_command(args) -> int:
    """Print a provisioning profile's identity and entitlements"""
    console = get_console()

    try:
        profile = ProvisioningProfile.load(args.profile)
    except AdhocSignError as e:
        console.print(f"[red]Error reading profile: {e}[/red]")
        return 1

    console.print("\n[bold]Provisioning Profile:[/bold]")
    console.print(f"[cyan]Name:[/] {profile.name}")
    console.print(f"[cyan]UUID:[/] {profile.uuid}")
    console.print(f"[cyan]Team ID:[/] {profile.team_id}")
    console.print(f"[cyan]Application identifier:[/] {profile.application_identifier}")
    console.print(f"[cyan]Wildcard:[/] {'yes' if profile.is_wildcard else 'no'}")
    if profile.expiration_date:
        console.print(f"[cyan]Expires:[/] {profile.expiration_date.isoformat()}")

    console.print("\n[bold]Entitlements:[/bold]")
    console.print_json(json.dumps(profile.entitlements, default=str))
    return 0
