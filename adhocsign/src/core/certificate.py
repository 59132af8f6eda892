import base64
import binascii
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, padding, rsa
from cryptography.x509.oid import NameOID

from adhocsign.logger import get_console
from adhocsign.src.core.errors import (
    CertificateDecodeError,
    IoError,
    KeyDecodeError,
    MissingCertificate,
    PemParseError,
)

_PEM_BEGIN = re.compile(rb"-----BEGIN ([A-Z0-9 ]+)-----")
_PEM_END = re.compile(rb"-----END ([A-Z0-9 ]+)-----")


@dataclass(frozen=True)
class PemBlock:
    tag: str
    contents: bytes


def parse_pem_blocks(data: bytes) -> List[PemBlock]:
    """Split raw bytes into PEM blocks, in file order.

    Text outside of BEGIN/END pairs is ignored, so bundles with comments or
    `openssl x509 -text` output around the blocks are accepted. Headers
    inside a block (``Proc-Type: ...``) are skipped.
    """
    blocks = []
    pos = 0
    while True:
        begin = _PEM_BEGIN.search(data, pos)
        stray_end = _PEM_END.search(data, pos)
        if begin is None:
            if stray_end is not None:
                raise PemParseError(
                    f"END {stray_end.group(1).decode()} without matching BEGIN"
                )
            return blocks
        if stray_end is not None and stray_end.start() < begin.start():
            raise PemParseError(
                f"END {stray_end.group(1).decode()} without matching BEGIN"
            )

        tag = begin.group(1).decode("ascii")
        end = _PEM_END.search(data, begin.end())
        if end is None:
            raise PemParseError(f"BEGIN {tag} without matching END")
        if end.group(1).decode("ascii") != tag:
            raise PemParseError(
                f"BEGIN {tag} closed by END {end.group(1).decode('ascii')}"
            )

        body_lines = [
            line.strip()
            for line in data[begin.end() : end.start()].splitlines()
            if line.strip() and b":" not in line
        ]
        try:
            contents = base64.b64decode(b"".join(body_lines), validate=True)
        except (binascii.Error, ValueError) as e:
            raise PemParseError(f"Invalid base64 in {tag} block: {e}") from e

        blocks.append(PemBlock(tag=tag, contents=contents))
        pos = end.end()


class KeyEncoding(Enum):
    PKCS8 = "pkcs8"
    PKCS1 = "pkcs1"


SigningKey = Union[
    rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey
]


@dataclass(frozen=True)
class PrivateKey:
    """A private key tagged with the encoding it was loaded from.

    Both encodings expose the same signing surface; callers never branch on
    `encoding`, it is kept for diagnostics only.
    """

    encoding: KeyEncoding
    key: SigningKey

    @classmethod
    def from_pkcs8_der(cls, der: bytes) -> "PrivateKey":
        try:
            key = serialization.load_der_private_key(der, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyDecodeError(f"Invalid PKCS#8 private key: {e}") from e
        if not isinstance(
            key, (rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey, ed25519.Ed25519PrivateKey)
        ):
            raise KeyDecodeError(f"Unsupported private key type: {type(key).__name__}")
        return cls(KeyEncoding.PKCS8, key)

    @classmethod
    def from_pkcs1_der(cls, der: bytes) -> "PrivateKey":
        try:
            key = serialization.load_der_private_key(der, password=None)
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise KeyDecodeError(f"Invalid PKCS#1 RSA private key: {e}") from e
        if not isinstance(key, rsa.RSAPrivateKey):
            raise KeyDecodeError("RSA PRIVATE KEY block does not hold an RSA key")
        return cls(KeyEncoding.PKCS1, key)

    def sign(self, data: bytes) -> bytes:
        """Sign `data` with SHA-256, using the scheme matching the key type."""
        if isinstance(self.key, rsa.RSAPrivateKey):
            return self.key.sign(data, padding.PKCS1v15(), hashes.SHA256())
        if isinstance(self.key, ec.EllipticCurvePrivateKey):
            return self.key.sign(data, ec.ECDSA(hashes.SHA256()))
        return self.key.sign(data)

    def public_key_der(self) -> bytes:
        return self.key.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )

    def to_pkcs8_pem(self) -> bytes:
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


@dataclass(frozen=True)
class Certificate:
    """Signing identity assembled from PEM material.

    Either half may be missing; `attach_to_signing_context` is where both
    become mandatory.
    """

    cert: Optional[x509.Certificate] = None
    key: Optional[PrivateKey] = None

    @property
    def is_complete(self) -> bool:
        return self.cert is not None and self.key is not None

    @property
    def common_name(self) -> Optional[str]:
        return self._subject_attribute(NameOID.COMMON_NAME)

    @property
    def team_id(self) -> Optional[str]:
        """Apple puts the team identifier in the subject OU."""
        return self._subject_attribute(NameOID.ORGANIZATIONAL_UNIT_NAME)

    @property
    def issuer_common_name(self) -> Optional[str]:
        if self.cert is None:
            return None
        attrs = self.cert.issuer.get_attributes_for_oid(NameOID.COMMON_NAME)
        return attrs[0].value if attrs else None

    def _subject_attribute(self, oid) -> Optional[str]:
        if self.cert is None:
            return None
        attrs = self.cert.subject.get_attributes_for_oid(oid)
        return attrs[0].value if attrs else None

    def is_time_valid(self, now: Optional[datetime] = None) -> bool:
        if self.cert is None:
            return False
        now = now or datetime.now(timezone.utc)
        return self.cert.not_valid_before_utc <= now <= self.cert.not_valid_after_utc

    def key_matches_certificate(self) -> bool:
        if not self.is_complete:
            return False
        cert_public = self.cert.public_key().public_bytes(
            serialization.Encoding.DER,
            serialization.PublicFormat.SubjectPublicKeyInfo,
        )
        return cert_public == self.key.public_key_der()

    def attach_to_signing_context(self, context, now: Optional[datetime] = None) -> None:
        """Install this identity into a signing context.

        A validity window that excludes `now` only produces a warning: such
        identities still sign, the device decides whether it accepts them.
        """
        if not self.is_complete:
            raise MissingCertificate()

        console = get_console()
        now = now or datetime.now(timezone.utc)
        if now < self.cert.not_valid_before_utc:
            start = self.cert.not_valid_before_utc.isoformat()
            context.add_warning(
                f"Signing certificate is not valid before {start}; "
                "signatures may not be valid"
            )
        elif not self.is_time_valid(now):
            expiry = self.cert.not_valid_after_utc.isoformat()
            context.add_warning(
                f"Signing certificate expired as of {expiry}; "
                "signatures may not be valid"
            )

        if not self.key_matches_certificate():
            context.add_warning("Private key does not match the signing certificate")

        context.set_signing_key(self.key, self.cert)

        for ca_name in context.chain_apple_certificates():
            console.log(f"[green]Automatically registered Apple CA certificate:[/] {ca_name}")


class CertificateStore:
    """Builds a `Certificate` from an ordered list of PEM files."""

    @staticmethod
    def load(paths: Optional[Iterable[Union[str, Path]]] = None) -> Certificate:
        cert, key = None, None
        for path in paths or []:
            cert, key = CertificateStore._apply_file(Path(path), cert, key)
        return Certificate(cert=cert, key=key)

    @staticmethod
    def _apply_file(
        path: Path,
        cert: Optional[x509.Certificate],
        key: Optional[PrivateKey],
    ) -> Tuple[Optional[x509.Certificate], Optional[PrivateKey]]:
        console = get_console()
        console.log(f"[blue]Reading PEM data from:[/] {path}")
        try:
            pem_data = path.read_bytes()
        except OSError as e:
            raise IoError(path, e) from e

        for block in parse_pem_blocks(pem_data):
            if block.tag == "CERTIFICATE":
                console.log(f"[green]Adding certificate from:[/] {path}")
                try:
                    cert = x509.load_der_x509_certificate(block.contents)
                except ValueError as e:
                    raise CertificateDecodeError(
                        f"Invalid certificate in {path}: {e}"
                    ) from e
            elif block.tag == "PRIVATE KEY":
                console.log(f"[green]Adding private key from:[/] {path}")
                key = PrivateKey.from_pkcs8_der(block.contents)
            elif block.tag == "RSA PRIVATE KEY":
                console.log(f"[green]Adding RSA private key from:[/] {path}")
                key = PrivateKey.from_pkcs1_der(block.contents)
            else:
                console.log(f"[yellow]Unhandled PEM tag {block.tag}; ignoring[/]")

        return cert, key
