from pathlib import Path
from typing import Optional


class AdhocSignError(Exception):
    """Base class for every error raised while resigning"""


class IoError(AdhocSignError):
    """A certificate, profile or binary could not be read"""

    def __init__(self, path: Path, cause: Optional[BaseException] = None):
        self.path = Path(path)
        self.cause = cause
        detail = f": {cause}" if cause else ""
        super().__init__(f"Could not read {self.path}{detail}")


class PemParseError(AdhocSignError):
    """PEM framing or base64 content is malformed"""


class CertificateDecodeError(AdhocSignError):
    """A CERTIFICATE block is not a valid DER X.509 certificate"""


class KeyDecodeError(AdhocSignError):
    """A private key block could not be decoded"""


class MachOParseError(AdhocSignError):
    """Binary is not a Mach-O container or its code signature is corrupt"""


class ProfileNotFound(AdhocSignError):
    def __init__(self, path: Path):
        self.path = Path(path)
        super().__init__(f"Provisioning profile not found: {self.path}")


class MalformedProfile(AdhocSignError):
    """Embedded plist missing, unparseable, or without an Entitlements dict"""

    def __init__(self, path: Path, reason: str):
        self.path = Path(path)
        self.reason = reason
        super().__init__(f"Malformed provisioning profile {self.path}: {reason}")


class MissingCertificate(AdhocSignError):
    def __init__(self, message: str = "Missing certificate or private key PEM data"):
        super().__init__(message)


class SigningOrderError(AdhocSignError):
    """Targets were not supplied innermost-first"""


class BackendError(AdhocSignError):
    """The code signing tool failed or is unavailable"""


class TargetSignError(AdhocSignError):
    """Signing one target failed; the remaining pass is aborted"""

    def __init__(self, target, cause: BaseException):
        self.target = target
        self.cause = cause
        super().__init__(f"Failed to sign {target.path}: {cause}")


class MissingEntitlements(AdhocSignError):
    """A bundle signed with an identity resolved no entitlements"""


class BundleInspectionError(AdhocSignError):
    """An app bundle's Info.plist is missing, unreadable or incomplete"""
