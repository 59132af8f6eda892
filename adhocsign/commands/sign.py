from pathlib import Path
import shutil
import sys
import tempfile
from typing import List, Optional, Sequence

from adhocsign.arguments import create_parser, create_signer_settings
from adhocsign.logger import get_console
from adhocsign.src.core.certificate import Certificate, CertificateStore
from adhocsign.src.core.errors import AdhocSignError, TargetSignError
from adhocsign.src.core.signer import RcodesignBackend, Signer, SigningResult
from adhocsign.src.core.signer_settings import SignerSettings
from adhocsign.src.core.signing_plan import SigningPlanBuilder
from adhocsign.src.ipa.provisioning_profile import ProvisioningProfile
from adhocsign.src.utils.config_loader import get_rcodesign_path, get_signing_config


def verify_app_exists(app_path: Path, console) -> bool:
    """Verify the app bundle exists and return status."""
    if not app_path.is_dir():
        console.print(f"[red]Error:[/] App bundle not found: {app_path}")
        return False
    return True


def load_profiles(paths: Sequence[Path]) -> List[ProvisioningProfile]:
    return [ProvisioningProfile.load(path) for path in paths]


def default_output_path(app_path: Path) -> Path:
    return app_path.with_name(f"{app_path.stem}-signed{app_path.suffix}")


def sign_bundle(
    app_path: Path,
    output_path: Path,
    certificate: Optional[Certificate],
    profiles: Sequence[ProvisioningProfile],
    settings: SignerSettings,
    backend=None,
) -> SigningResult:
    """Sign a copy of `app_path` and move it to `output_path` once every target succeeded.

    The input bundle is never modified; on failure nothing is written to
    `output_path`.
    """
    console = get_console()
    with tempfile.TemporaryDirectory(prefix="adhocsign-bundle-") as temp_dir:
        work_app = Path(temp_dir) / app_path.name
        console.log(f"[blue]Copying bundle to:[/] {work_app}")
        shutil.copytree(app_path, work_app, symlinks=True)

        builder = SigningPlanBuilder(profiles, settings)
        targets = builder.build(work_app)
        result = Signer(certificate, settings, backend).sign(targets)
        result.warnings = builder.warnings + result.warnings

        if output_path.exists():
            shutil.rmtree(output_path)
        shutil.move(str(work_app), str(output_path))

    console.log(f"[green]Successfully signed app:[/] {output_path}")
    return result


def print_configuration_summary(console, args, settings: SignerSettings) -> None:
    """Print the configuration summary."""
    console.print("\n[bold blue]Signing Configuration:[/]")
    console.print(f"[cyan]Input app:[/] {args.app_path}")
    console.print(f"[cyan]Sign mode:[/] {settings.sign_mode.value}")
    console.print(f"[cyan]Shallow:[/] {settings.sign_shallow}")

    overrides = {
        "Bundle name": settings.custom_name,
        "Bundle identifier": settings.custom_identifier,
        "Version": settings.custom_version,
        "Build version": settings.custom_build_version,
        "File sharing": settings.support_file_sharing,
        "Older OS versions": settings.support_older_versions,
        "All devices": settings.support_more_devices,
    }
    if settings.has_info_plist_overrides:
        console.print("\n[cyan]Enabled Options:[/]")
        for key, value in overrides.items():
            if not value:
                continue
            console.print(f"  • {key}" if value is True else f"  • {key}: {value}")


def print_identity_summary(console, certificate: Optional[Certificate]) -> None:
    if certificate is None or not certificate.is_complete:
        console.print("[yellow]Identity:[/] none, signing ad-hoc")
        return
    console.print(f"[cyan]Identity:[/] {certificate.common_name}")
    console.print(f"[cyan]Team ID:[/] {certificate.team_id}")
    console.print(f"[cyan]Issuer:[/] {certificate.issuer_common_name}")


def print_warnings(console, warnings: Sequence[str]) -> None:
    if not warnings:
        return
    console.print("\n[yellow]Warnings:[/]")
    for warning in warnings:
        console.print(f"  • {warning}")


def main(parsed_args=None) -> int:
    """Main sign function that does the actual work.

    Args:
        parsed_args: Optional pre-parsed arguments (from CLI)
    """
    console = get_console()
    args = parsed_args if parsed_args is not None else create_parser().parse_args()

    if not verify_app_exists(args.app_path, console):
        return 1

    try:
        config = get_signing_config()
        settings = create_signer_settings(args, config)
    except ValueError as e:
        console.print(f"[red]Error: {e}[/]")
        return 1

    print_configuration_summary(console, args, settings)

    # Identity and profiles are loaded before any file is touched
    try:
        certificate = CertificateStore.load(args.pem) if args.pem else None
        profiles = load_profiles(args.profile)
    except AdhocSignError as e:
        console.print(f"\n[red]Error loading signing material:[/] {e}")
        return 1

    print_identity_summary(console, certificate)

    output_path = args.output or default_output_path(args.app_path)
    backend = RcodesignBackend(get_rcodesign_path())

    try:
        result = sign_bundle(
            args.app_path, output_path, certificate, profiles, settings, backend
        )
    except TargetSignError as e:
        console.print(f"\n[red]Error signing {e.target.path.name}:[/] {e.cause}")
        console.print("[yellow]The original app was left untouched[/]")
        return 1
    except AdhocSignError as e:
        console.print(f"\n[red]Error during signing:[/] {e}")
        return 1

    print_warnings(console, result.warnings)
    return 0


def run_sign_command(args):
    """Entry point for the sign command from CLI"""
    return main(parsed_args=args)


# For direct script execution - route through the CLI
if __name__ == "__main__":
    from adhocsign.cli import main as cli_main

    sys.exit(cli_main())
