"""Provisioning profile entitlements extraction.

A .mobileprovision is a CMS signed-data envelope around an XML plist. The
envelope is not parsed: the plist is located by its text markers and
handed to plistlib. The two steps are kept apart so the marker search can
be swapped for a real CMS reader without touching the plist handling.

The envelope signature is never verified here.
"""

import copy
import plistlib
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union
from xml.parsers.expat import ExpatError

from adhocsign.logger import get_console
from adhocsign.src.core.errors import IoError, MalformedProfile, ProfileNotFound

PLIST_START_MARKER = b"<plist"
PLIST_END_MARKER = b"</plist>"


def find_marker_range(
    data: bytes, start_marker: bytes, end_marker: bytes
) -> Optional[Tuple[int, int]]:
    """Return [start, end) spanning the first start marker to the last end marker.

    The end offset includes the end marker itself. None when either marker
    is missing or the last end marker sits before the first start marker.
    """
    start = data.find(start_marker)
    if start < 0:
        return None
    end = data.rfind(end_marker)
    if end < start:
        return None
    return start, end + len(end_marker)


def parse_embedded_plist(payload: bytes) -> Any:
    """Parse an XML plist document; raises ValueError on any malformation."""
    try:
        return plistlib.loads(payload, fmt=plistlib.FMT_XML)
    except (ExpatError, AttributeError, TypeError) as e:
        raise ValueError(str(e) or type(e).__name__) from e


class ProvisioningProfile:
    """One provisioning profile file and its entitlements.

    Read-only after `load`; `entitlements` hands out a copy.
    """

    def __init__(self, path: Path, document: Dict[str, Any], entitlements: Dict[str, Any]):
        self._path = path
        self._document = document
        self._entitlements = entitlements

    @classmethod
    def load(cls, path: Union[str, Path]) -> "ProvisioningProfile":
        path = Path(path)
        if not path.exists():
            raise ProfileNotFound(path)

        console = get_console()
        console.log(f"[blue]Reading provisioning profile:[/] {path}")
        try:
            data = path.read_bytes()
        except OSError as e:
            raise IoError(path, e) from e

        marker_range = find_marker_range(data, PLIST_START_MARKER, PLIST_END_MARKER)
        if marker_range is None:
            raise MalformedProfile(path, "embedded plist markers not found")

        start, end = marker_range
        try:
            document = parse_embedded_plist(data[start:end])
        except ValueError as e:
            raise MalformedProfile(path, f"embedded plist is invalid ({e})") from e

        if not isinstance(document, dict):
            raise MalformedProfile(path, "embedded plist is not a dictionary")

        entitlements = document.get("Entitlements")
        if not isinstance(entitlements, dict):
            raise MalformedProfile(path, "Entitlements dictionary not found")

        profile = cls(path, document, entitlements)
        console.log(
            f"[green]Loaded profile {profile.name or path.name}[/] "
            f"({len(entitlements)} entitlements)"
        )
        return profile

    @property
    def path(self) -> Path:
        return self._path

    @property
    def entitlements(self) -> Dict[str, Any]:
        return copy.deepcopy(self._entitlements)

    @property
    def name(self) -> Optional[str]:
        return self._document.get("Name")

    @property
    def uuid(self) -> Optional[str]:
        return self._document.get("UUID")

    @property
    def team_identifiers(self) -> List[str]:
        return list(self._document.get("TeamIdentifier", []))

    @property
    def expiration_date(self) -> Optional[datetime]:
        return self._document.get("ExpirationDate")

    @property
    def application_identifier(self) -> Optional[str]:
        return self._entitlements.get("application-identifier")

    @property
    def team_id(self) -> Optional[str]:
        team_id = self._entitlements.get("com.apple.developer.team-identifier")
        if team_id:
            return team_id
        if self.team_identifiers:
            return self.team_identifiers[0]
        app_id = self.application_identifier
        return app_id.split(".", 1)[0] if app_id and "." in app_id else None

    @property
    def bundle_id_pattern(self) -> Optional[str]:
        """Application identifier without the team prefix, e.g. `com.foo.*`."""
        app_id = self.application_identifier
        if not app_id or "." not in app_id:
            return None
        return app_id.split(".", 1)[1]

    @property
    def is_wildcard(self) -> bool:
        pattern = self.bundle_id_pattern
        return pattern is not None and pattern.endswith("*")

    def matches_bundle_id(self, bundle_id: str, exact: bool = False) -> bool:
        pattern = self.bundle_id_pattern
        if pattern is None:
            return False
        if pattern.endswith("*"):
            return not exact and bundle_id.startswith(pattern[:-1])
        return bundle_id == pattern

    def to_xml_bytes(self) -> bytes:
        """Standalone XML plist of the entitlements, for a code signature."""
        return plistlib.dumps(self._entitlements, fmt=plistlib.FMT_XML, sort_keys=False)
