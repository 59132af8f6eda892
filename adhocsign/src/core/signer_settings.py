from dataclasses import dataclass
from enum import Enum
from typing import Optional


class SignMode(Enum):
    # Every bundle gets its own profile and entitlements
    DEFAULT = "default"
    # Extensions reuse the main app's profile and entitlements
    ZSIGN = "zsign"


@dataclass(frozen=True)
class SignerSettings:
    """Resign policy for one signing session"""

    sign_shallow: bool = False  # Only sign the outermost bundle
    sign_mode: SignMode = SignMode.DEFAULT
    require_identity: bool = False  # Refuse to fall back to ad-hoc signing

    # Info.plist overrides (None = keep original)
    custom_name: Optional[str] = None
    custom_identifier: Optional[str] = None
    custom_version: Optional[str] = None
    custom_build_version: Optional[str] = None

    support_file_sharing: Optional[bool] = None
    support_older_versions: Optional[bool] = None
    support_more_devices: Optional[bool] = None

    @property
    def has_info_plist_overrides(self) -> bool:
        return any(
            (
                self.custom_name,
                self.custom_identifier,
                self.custom_version,
                self.custom_build_version,
                self.support_file_sharing,
                self.support_older_versions,
                self.support_more_devices,
            )
        )
