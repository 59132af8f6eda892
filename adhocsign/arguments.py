import argparse
from pathlib import Path
from typing import Any, Dict, Optional

from rich_argparse import RawDescriptionRichHelpFormatter

from adhocsign.src.core.signer_settings import SignerSettings, SignMode


def create_parser():
    """Create and return an argument parser with signing arguments."""
    parser = argparse.ArgumentParser(
        prog="adhocsign",
        description="Resign an iOS app bundle for ad-hoc distribution",
        formatter_class=RawDescriptionRichHelpFormatter,
    )
    add_signing_arguments(parser)
    return parser


def add_signing_arguments(parser):
    """Add all signing-related arguments to an existing parser."""
    # Required argument
    parser.add_argument("app_path", type=Path, help="Path to the .app bundle to sign")

    parser.add_argument(
        "--pem",
        type=Path,
        action="append",
        default=[],
        help="PEM file with the certificate and/or private key, may be repeated; later files win",
    )

    parser.add_argument(
        "--profile",
        type=Path,
        action="append",
        default=[],
        help="Provisioning profile, may be repeated; the first one belongs to the main app",
    )

    parser.add_argument(
        "--output",
        "-o",
        type=Path,
        help="Where to write the signed app [default: <name>-signed.app next to the input]",
    )

    parser.add_argument(
        "--mode",
        choices=[m.value for m in SignMode],
        help="default: every bundle gets its own profile; zsign: extensions reuse the main app profile [default: default]",
    )

    parser.add_argument(
        "--shallow",
        action="store_true",
        default=None,
        help="Only sign the main app, assume nested code is already signed [default: disabled]",
    )

    parser.add_argument(
        "--require-identity",
        action="store_true",
        help="Fail instead of signing ad-hoc when no certificate/key is loaded [default: disabled]",
    )

    # Optional arguments for patching options
    parser.add_argument(
        "--bundle-name",
        type=str,
        help="Change the app's visible name [default: keep original]",
    )

    parser.add_argument(
        "--bundle-id",
        type=str,
        help="Change the main bundle identifier, extensions follow [default: keep original]",
    )

    parser.add_argument(
        "--bundle-version",
        type=str,
        help="Change CFBundleShortVersionString [default: keep original]",
    )

    parser.add_argument(
        "--build-version",
        type=str,
        help="Change CFBundleVersion [default: keep original]",
    )

    parser.add_argument(
        "--patch-file-sharing",
        action="store_true",
        help="Enable Files app and iTunes file sharing support [default: disabled]",
    )

    parser.add_argument(
        "--patch-older-versions",
        action="store_true",
        help="Lower the minimum OS version [default: disabled]",
    )

    parser.add_argument(
        "--patch-all-devices",
        action="store_true",
        help="Enable support for all devices [default: disabled]",
    )


def create_signer_settings(args, config: Optional[Dict[str, Any]] = None) -> SignerSettings:
    """Convert parsed arguments to SignerSettings, falling back to config"""
    config = config or {}

    mode = args.mode or config.get("sign_mode", SignMode.DEFAULT.value)
    shallow = args.shallow if args.shallow is not None else config.get("shallow", False)

    return SignerSettings(
        sign_shallow=bool(shallow),
        sign_mode=SignMode(mode),
        require_identity=args.require_identity,
        custom_name=args.bundle_name,
        custom_identifier=args.bundle_id,
        custom_version=args.bundle_version,
        custom_build_version=args.build_version,
        support_file_sharing=args.patch_file_sharing or None,
        support_older_versions=args.patch_older_versions or None,
        support_more_devices=args.patch_all_devices or None,
    )
