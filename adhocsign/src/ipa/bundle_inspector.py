import plistlib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.parsers.expat import ExpatError

from adhocsign.logger import get_console
from adhocsign.src.core.errors import BundleInspectionError

# Directories that carry their own code signature
CODE_BUNDLE_SUFFIXES = {".app", ".appex", ".framework"}


class ComponentKind(Enum):
    APP = "app"
    APP_EXTENSION = "appex"
    FRAMEWORK = "framework"
    DYLIB = "dylib"
    BUNDLE = "bundle"

    @property
    def is_primary(self) -> bool:
        """Primary components get a provisioning profile and entitlements"""
        return self in (ComponentKind.APP, ComponentKind.APP_EXTENSION)


_SUFFIX_KINDS = {
    ".app": ComponentKind.APP,
    ".appex": ComponentKind.APP_EXTENSION,
    ".framework": ComponentKind.FRAMEWORK,
    ".dylib": ComponentKind.DYLIB,
    ".bundle": ComponentKind.BUNDLE,
}


@dataclass
class BundleComponent:
    """A signable piece of an app bundle"""

    path: Path  # Bundle directory, or the file itself for a dylib
    kind: ComponentKind
    depth: int  # 0 for the main app, +1 per enclosing code bundle
    bundle_id: str
    executable: Path
    info_plist: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_main_app(self) -> bool:
        return self.depth == 0


def nesting_depth(path: Path, app_dir: Path) -> int:
    """Number of code bundles enclosing `path` inside `app_dir`, the main app included."""
    relative = path.relative_to(app_dir)
    enclosing = [p for p in relative.parents if p.suffix in CODE_BUNDLE_SUFFIXES]
    return 1 + len(enclosing)


def load_info_plist(bundle: Path) -> Optional[Dict[str, Any]]:
    info_plist_path = bundle / "Info.plist"
    if not info_plist_path.exists():
        return None
    try:
        with open(info_plist_path, "rb") as f:
            info = plistlib.load(f)
    except (plistlib.InvalidFileException, ExpatError, ValueError, OSError) as e:
        raise BundleInspectionError(f"Could not read {info_plist_path}: {e}") from e
    if not isinstance(info, dict):
        raise BundleInspectionError(f"{info_plist_path} is not a dictionary")
    return info


class BundleInspector:
    """Finds every signable component of an unpacked .app"""

    # Order matters within one depth level; the sort below is stable.
    component_patterns = [
        "**/*.framework",
        "**/*.dylib",
        "**/PlugIns/*.bundle",
        "**/*.appex",
        "**/*.app",
    ]

    def __init__(self, app_dir: Path):
        self.app_dir = Path(app_dir)
        self.console = get_console()
        self._components: Optional[List[BundleComponent]] = None

    def get_main_app_bundle_id(self) -> str:
        info = load_info_plist(self.app_dir)
        if info is None:
            raise BundleInspectionError(f"No Info.plist found in main app bundle: {self.app_dir}")
        bundle_id = info.get("CFBundleIdentifier")
        if not isinstance(bundle_id, str) or not bundle_id:
            raise BundleInspectionError(f"Main app has no CFBundleIdentifier: {self.app_dir}")
        return bundle_id

    def get_components(self) -> List[BundleComponent]:
        """All components, innermost first, main app last"""
        if self._components is not None:
            return self._components

        found: List[Path] = []
        for pattern in self.component_patterns:
            for path in self.app_dir.glob(pattern):
                if path != self.app_dir and path not in found:
                    found.append(path)

        components = []
        for path in found:
            component = self._inspect(path, nesting_depth(path, self.app_dir))
            if component:
                components.append(component)

        main_app = self._inspect(self.app_dir, 0)
        if main_app is None:
            raise BundleInspectionError(f"Main app bundle is not signable: {self.app_dir}")
        components.append(main_app)

        components.sort(key=lambda c: c.depth, reverse=True)
        self.console.log(
            f"[blue]Found {len(components)} signable components in:[/] {self.app_dir}"
        )
        self._components = components
        return components

    def _inspect(self, path: Path, depth: int) -> Optional[BundleComponent]:
        kind = _SUFFIX_KINDS.get(path.suffix)
        if kind is None:
            return None

        # For .dylib files, the path itself is the executable
        if kind == ComponentKind.DYLIB:
            if not path.is_file():
                return None
            return BundleComponent(
                path=path,
                kind=kind,
                depth=depth,
                bundle_id=path.stem,
                executable=path,
            )

        info = load_info_plist(path)
        if info is None:
            if kind.is_primary:
                self.console.log(f"[yellow]No Info.plist found in:[/] {path}")
                return None
            info = {}

        executable = path / info.get("CFBundleExecutable", path.stem)
        if not executable.is_file():
            # Resource-only bundles have nothing to sign
            self.console.log(f"[yellow]No executable found for:[/] {path}")
            return None

        return BundleComponent(
            path=path,
            kind=kind,
            depth=depth,
            bundle_id=info.get("CFBundleIdentifier", path.stem),
            executable=executable,
            info_plist=info,
        )
