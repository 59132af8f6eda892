import os
import plistlib
import shutil
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.x509.oid import NameOID

from adhocsign.logger import get_console, log_warning
from adhocsign.src.core.certificate import Certificate, PrivateKey
from adhocsign.src.core.errors import (
    AdhocSignError,
    BackendError,
    MissingCertificate,
    MissingEntitlements,
    TargetSignError,
)
from adhocsign.src.core.signer_settings import SignerSettings
from adhocsign.src.core.signing_plan import SigningTarget, verify_signing_order
from adhocsign.src.ipa.app_patcher import AppPatcher

APPLE_ROOT_CA = "Apple Root CA"
APPLE_ROOT_CA_G2 = "Apple Root CA - G2"
APPLE_ROOT_CA_G3 = "Apple Root CA - G3"

# Issuer common name -> CA certificates completing the chain up to the root
APPLE_CA_CHAINS = {
    "Apple Worldwide Developer Relations Certification Authority": [APPLE_ROOT_CA],
    "Apple Worldwide Developer Relations Certification Authority - G2": [APPLE_ROOT_CA_G2],
    "Apple Worldwide Developer Relations Certification Authority - G3": [APPLE_ROOT_CA],
    "Apple Worldwide Developer Relations Certification Authority - G4": [APPLE_ROOT_CA],
    "Apple Worldwide Developer Relations Certification Authority - G5": [APPLE_ROOT_CA],
    "Apple Worldwide Developer Relations Certification Authority - G6": [APPLE_ROOT_CA_G3],
    "Developer ID Certification Authority": [APPLE_ROOT_CA],
    "Developer ID Certification Authority - G2": [APPLE_ROOT_CA_G2],
}

EMBEDDED_PROFILE_NAME = "embedded.mobileprovision"


@dataclass
class SigningContext:
    """Per-call signing state; never shared between sign() invocations"""

    shallow: bool = False
    for_notarization: bool = False
    signing_key: Optional[PrivateKey] = None
    signing_cert: Optional[x509.Certificate] = None
    team_id: Optional[str] = None
    certificate_chain: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def is_adhoc(self) -> bool:
        return self.signing_key is None or self.signing_cert is None

    def set_signing_key(self, key: PrivateKey, cert: x509.Certificate) -> None:
        self.signing_key = key
        self.signing_cert = cert

    def set_team_id_from_signing_certificate(self) -> Optional[str]:
        if self.signing_cert is not None:
            attrs = self.signing_cert.subject.get_attributes_for_oid(
                NameOID.ORGANIZATIONAL_UNIT_NAME
            )
            self.team_id = attrs[0].value if attrs else None
        return self.team_id

    def chain_apple_certificates(self) -> List[str]:
        """Add the Apple CAs missing between the signing certificate and its root.

        Only the CA names are recorded, for logging; rcodesign embeds the
        actual Apple CA certificates when it builds the signature.
        Returns the names of the CAs that were added.
        """
        if self.signing_cert is None:
            return []
        issuer = self.signing_cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        if not issuer:
            return []

        issuer_name = issuer[0].value
        if issuer_name not in APPLE_CA_CHAINS:
            return []

        added = []
        for ca_name in [issuer_name] + APPLE_CA_CHAINS[issuer_name]:
            if ca_name not in self.certificate_chain:
                self.certificate_chain.append(ca_name)
                added.append(ca_name)
        return added

    def add_warning(self, message: str) -> None:
        log_warning(message, self.warnings)


@dataclass
class SigningResult:
    signed: List[Path] = field(default_factory=list)
    skipped: List[Path] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


class RcodesignBackend:
    """Signs one path with apple-codesign's `rcodesign` tool.

    Nesting is handled by the Signer, so every call signs shallowly.
    """

    def __init__(self, executable: str = "rcodesign"):
        self.executable = executable
        self.console = get_console()

    def _write_identity(self, context: SigningContext, directory: Path) -> Path:
        pem_path = directory / "identity.pem"
        fd = os.open(pem_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(context.signing_cert.public_bytes(serialization.Encoding.PEM))
            f.write(context.signing_key.to_pkcs8_pem())
        return pem_path

    def build_command(
        self,
        path: Path,
        context: SigningContext,
        entitlements_path: Optional[Path],
        pem_path: Optional[Path],
    ) -> List[str]:
        cmd = [self.executable, "sign", "--shallow"]
        if pem_path is not None:
            cmd.extend(["--pem-file", str(pem_path)])
        if context.team_id:
            cmd.extend(["--team-name", context.team_id])
        if context.for_notarization:
            cmd.append("--for-notarization")
        if entitlements_path is not None:
            cmd.extend(["--entitlements-xml-file", str(entitlements_path)])
        cmd.append(str(path))
        return cmd

    def sign(
        self,
        path: Path,
        context: SigningContext,
        entitlements_path: Optional[Path] = None,
    ) -> None:
        with tempfile.TemporaryDirectory(prefix="adhocsign-identity-") as tmp:
            pem_path = None if context.is_adhoc else self._write_identity(context, Path(tmp))
            cmd = self.build_command(path, context, entitlements_path, pem_path)

            self.console.log(f"[cyan]Running codesign command:[/] {' '.join(cmd)}")
            try:
                result = subprocess.run(cmd, check=True, capture_output=True, text=True)
            except FileNotFoundError as e:
                raise BackendError(f"Signing tool not found: {self.executable}") from e
            except subprocess.CalledProcessError as e:
                raise BackendError(
                    f"Codesign failed:\nCommand: {' '.join(cmd)}\n"
                    f"Stdout: {e.stdout}\nStderr: {e.stderr}"
                ) from e
            if result.stdout:
                self.console.log(f"[green]Codesign output:[/]\n{result.stdout}")


class Signer:
    """Signs an innermost-first list of targets with one identity"""

    def __init__(
        self,
        certificate: Optional[Certificate],
        settings: SignerSettings,
        backend=None,
    ):
        self.certificate = certificate
        self.settings = settings
        self.backend = backend or RcodesignBackend()
        self.patcher = AppPatcher(settings)
        self.console = get_console()

    def build_context(self) -> SigningContext:
        context = SigningContext()

        if self.certificate is not None and self.certificate.is_complete:
            self.certificate.attach_to_signing_context(context)
        elif self.settings.require_identity:
            raise MissingCertificate(
                "A complete certificate and private key are required for signing"
            )
        else:
            context.add_warning("No complete signing identity loaded; signing ad-hoc")

        context.set_team_id_from_signing_certificate()
        context.shallow = self.settings.sign_shallow
        context.for_notarization = False
        return context

    def sign(self, targets: Sequence[SigningTarget]) -> SigningResult:
        targets = list(targets)
        # Both checks run before any file is touched
        verify_signing_order(targets)
        context = self.build_context()

        result = SigningResult()
        with tempfile.TemporaryDirectory(prefix="adhocsign-") as tmp:
            for index, target in enumerate(targets):
                if context.shallow and target.depth > 0:
                    self.console.log(f"[yellow]Shallow signing, skipping:[/] {target.path}")
                    result.skipped.append(target.path)
                    continue

                try:
                    self._sign_target(target, context, Path(tmp), index)
                except (AdhocSignError, OSError, ValueError, TypeError) as e:
                    self.console.log(f"[red]Failed to sign:[/] {target.path}")
                    raise TargetSignError(target, e) from e
                result.signed.append(target.path)

        result.warnings = list(context.warnings)
        self.console.log(f"[bold green]Signed {len(result.signed)} targets[/]")
        return result

    def _sign_target(
        self,
        target: SigningTarget,
        context: SigningContext,
        temp_path: Path,
        index: int,
    ) -> None:
        self.console.log(f"\n[blue]Signing {target.kind.value}:[/] {target.path}")

        if target.is_primary and not context.is_adhoc and target.entitlements is None:
            raise MissingEntitlements(f"No entitlements resolved for {target.path}")

        if target.is_primary and target.info_plist_overrides:
            self.patcher.patch_info_plist(target.path, target.info_plist_overrides)

        if target.profile is not None and target.path.is_dir():
            embedded = target.path / EMBEDDED_PROFILE_NAME
            shutil.copy2(target.profile.path, embedded)
            self.console.log(f"[green]Copied provisioning profile to:[/] {embedded}")

        entitlements_path = None
        if target.entitlements is not None:
            entitlements_path = temp_path / f"{index}_{target.path.name}_entitlements.plist"
            with open(entitlements_path, "wb") as f:
                plistlib.dump(target.entitlements, f, fmt=plistlib.FMT_XML)

        self.backend.sign(target.path, context, entitlements_path)
