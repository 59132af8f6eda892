import plistlib
from pathlib import Path
from typing import Any, Dict, Optional

from adhocsign.logger import get_console
from adhocsign.src.core.signer_settings import SignerSettings

# Lowest OS version written when older versions are requested
MINIMUM_OS_VERSION = "10.0"

# Sentinel marking a key that must be removed from Info.plist
REMOVE = None


def map_bundle_id(
    bundle_id: str, original_main_id: str, custom_identifier: Optional[str]
) -> str:
    """Apply a custom main bundle identifier to `bundle_id`.

    Nested bundles keep their suffix, so `com.foo.app.widget` becomes
    `com.bar.widget` when the main app moves from `com.foo.app` to `com.bar`.
    """
    if not custom_identifier:
        return bundle_id
    if bundle_id == original_main_id:
        return custom_identifier
    if bundle_id.startswith(original_main_id + "."):
        return custom_identifier + bundle_id[len(original_main_id) :]
    return bundle_id


class AppPatcher:
    """Turns SignerSettings into Info.plist changes and applies them"""

    def __init__(self, settings: SignerSettings):
        self.settings = settings
        self.console = get_console()

    def build_overrides(
        self,
        info: Dict[str, Any],
        original_main_id: str,
        is_main_app: bool = False,
    ) -> Dict[str, Any]:
        """Compute the Info.plist keys to change; a None value removes the key."""
        opts = self.settings
        overrides: Dict[str, Any] = {}

        if opts.custom_identifier and "CFBundleIdentifier" in info:
            new_id = map_bundle_id(
                info["CFBundleIdentifier"], original_main_id, opts.custom_identifier
            )
            if new_id != info["CFBundleIdentifier"]:
                overrides["CFBundleIdentifier"] = new_id

        # Only the main app gets the remaining patches; they can corrupt extensions.
        if not is_main_app:
            return overrides

        if opts.custom_name:
            overrides["CFBundleDisplayName"] = opts.custom_name
            overrides["CFBundleName"] = opts.custom_name

        if opts.custom_version:
            overrides["CFBundleShortVersionString"] = opts.custom_version

        if opts.custom_build_version:
            overrides["CFBundleVersion"] = opts.custom_build_version

        if opts.support_more_devices:
            if "UISupportedDevices" in info:
                overrides["UISupportedDevices"] = REMOVE
            overrides["UIDeviceFamily"] = [1, 2]  # iOS and iPadOS

        if opts.support_older_versions:
            overrides["MinimumOSVersion"] = MINIMUM_OS_VERSION

        if opts.support_file_sharing:
            overrides["UIFileSharingEnabled"] = True
            overrides["UISupportsDocumentBrowser"] = True
            overrides["LSSupportsOpeningDocumentsInPlace"] = True

        return overrides

    def patch_info_plist(self, bundle: Path, overrides: Dict[str, Any]) -> Dict[str, Any]:
        """Write `overrides` into the bundle's Info.plist and return the result"""
        info_plist = bundle / "Info.plist"
        if not overrides:
            return {}

        self.console.log(f"[blue]Patching Info.plist:[/] {info_plist}")
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)

        for key, value in overrides.items():
            if value is REMOVE:
                if info.pop(key, None) is not None:
                    self.console.log(f"[yellow]Removing {key}")
                continue
            self.console.log(f"[green]Setting {key}:[/] {info.get(key)} -> {value}")
            info[key] = value

        with open(info_plist, "wb") as f:
            plistlib.dump(info, f, sort_keys=False)

        return info
