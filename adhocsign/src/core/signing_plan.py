import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from adhocsign.logger import get_console, log_warning
from adhocsign.src.core.errors import MachOParseError, SigningOrderError
from adhocsign.src.core.signer_settings import SignerSettings, SignMode
from adhocsign.src.ipa.app_patcher import AppPatcher, map_bundle_id
from adhocsign.src.ipa.bundle_inspector import (
    BundleComponent,
    BundleInspector,
    ComponentKind,
)
from adhocsign.src.ipa.provisioning_profile import ProvisioningProfile
from adhocsign.src.macho.entitlements_reader import MachOEntitlementsReader


@dataclass
class SigningTarget:
    """One path to sign and everything resolved for it"""

    path: Path
    kind: ComponentKind = ComponentKind.APP
    depth: int = 0
    bundle_id: Optional[str] = None
    entitlements: Optional[Dict[str, Any]] = None
    profile: Optional[ProvisioningProfile] = None
    info_plist_overrides: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_primary(self) -> bool:
        return self.kind.is_primary


def _is_within(path: Path, ancestor: Path) -> bool:
    return ancestor in path.parents


def verify_signing_order(targets: Sequence[SigningTarget]) -> None:
    """Reject any order that would sign an outer bundle before its nested code.

    A target may not follow a shallower target, nor live inside a target
    listed before it.
    """
    for i, earlier in enumerate(targets):
        for later in targets[i + 1 :]:
            if later.depth > earlier.depth or _is_within(later.path, earlier.path):
                raise SigningOrderError(
                    f"{later.path} (depth {later.depth}) must be signed before "
                    f"{earlier.path} (depth {earlier.depth})"
                )


class SigningPlanBuilder:
    """Resolves entitlements and profiles for every component of an app"""

    def __init__(
        self,
        profiles: Sequence[ProvisioningProfile],
        settings: SignerSettings,
        reader_factory: Callable[[Path], MachOEntitlementsReader] = MachOEntitlementsReader,
    ):
        self.profiles = list(profiles)
        self.settings = settings
        self.reader_factory = reader_factory
        self.patcher = AppPatcher(settings)
        self.console = get_console()
        self.warnings: List[str] = []
        self._main_profile: Optional[ProvisioningProfile] = None

    @property
    def main_profile(self) -> Optional[ProvisioningProfile]:
        """Profile matching the main app, else the first one loaded"""
        if self._main_profile is not None:
            return self._main_profile
        return self.profiles[0] if self.profiles else None

    def build(self, app_dir: Path) -> List[SigningTarget]:
        inspector = BundleInspector(app_dir)
        components = inspector.get_components()
        main_bundle_id = inspector.get_main_app_bundle_id()

        main_id = map_bundle_id(main_bundle_id, main_bundle_id, self.settings.custom_identifier)
        self._main_profile = self._match_profile(main_id)

        # The main app is always last; resolving it first lets zsign reuse it
        main_target = self._resolve(components[-1], main_bundle_id)
        targets = [self._resolve(c, main_bundle_id, main_target) for c in components[:-1]]
        targets.append(main_target)

        verify_signing_order(targets)
        return targets

    def _match_profile(self, bundle_id: str) -> Optional[ProvisioningProfile]:
        for profile in self.profiles:
            if profile.matches_bundle_id(bundle_id, exact=True):
                return profile
        for profile in self.profiles:
            if profile.matches_bundle_id(bundle_id):
                return profile
        return None

    def select_profile(self, bundle_id: str) -> Optional[ProvisioningProfile]:
        """Profile for one primary bundle, honouring the sign mode"""
        if self.settings.sign_mode == SignMode.ZSIGN:
            return self.main_profile
        return self._match_profile(bundle_id) or self.main_profile

    def _read_existing_entitlements(self, executable: Path) -> Optional[Dict[str, Any]]:
        try:
            return self.reader_factory(executable).read_entitlements_dict()
        except MachOParseError as e:
            self._warn(f"Could not read entitlements of {executable}: {e}")
            return None

    def _resolve(
        self,
        component: BundleComponent,
        main_bundle_id: str,
        main_target: Optional[SigningTarget] = None,
    ) -> SigningTarget:
        target = SigningTarget(
            path=component.path,
            kind=component.kind,
            depth=component.depth,
            bundle_id=component.bundle_id,
        )
        if not component.kind.is_primary:
            return target

        target.info_plist_overrides = self.patcher.build_overrides(
            component.info_plist, main_bundle_id, is_main_app=component.is_main_app
        )
        effective_id = map_bundle_id(
            component.bundle_id, main_bundle_id, self.settings.custom_identifier
        )
        existing = self._read_existing_entitlements(component.executable)

        if self.settings.sign_mode == SignMode.ZSIGN and main_target is not None:
            # zsign: nested bundles carry exactly what the main app resolved
            target.profile = main_target.profile
            target.entitlements = copy.deepcopy(main_target.entitlements)
            if existing and target.entitlements is not None:
                self._check_compatibility(component, existing, target.entitlements)
            return target

        target.profile = self.select_profile(effective_id)

        if target.profile is not None:
            entitlements = target.profile.entitlements
            self.console.log(
                f"[blue]Using profile {target.profile.path.name} for:[/] {component.bundle_id}"
            )
            if existing:
                self._check_compatibility(component, existing, entitlements)
        elif existing is not None:
            entitlements = existing
        else:
            entitlements = None

        if entitlements is not None:
            entitlements = self._merge_overrides(entitlements, effective_id)
        target.entitlements = entitlements
        return target

    def _check_compatibility(
        self,
        component: BundleComponent,
        existing: Dict[str, Any],
        granted: Dict[str, Any],
    ) -> None:
        missing = sorted(k for k in existing if k not in granted)
        if missing:
            self._warn(
                f"{component.bundle_id} uses entitlements not granted by the profile: "
                + ", ".join(missing)
            )

    def _merge_overrides(self, entitlements: Dict[str, Any], bundle_id: str) -> Dict[str, Any]:
        """Narrow a wildcard application-identifier to the signed bundle"""
        merged = dict(entitlements)
        app_id = merged.get("application-identifier")
        if isinstance(app_id, str) and app_id.endswith("*") and "." in app_id:
            team_prefix = app_id.split(".", 1)[0]
            merged["application-identifier"] = f"{team_prefix}.{bundle_id}"
        return merged

    def _warn(self, message: str) -> None:
        log_warning(message, self.warnings)


def build_signing_plan(
    app_dir: Path,
    profiles: Sequence[ProvisioningProfile],
    settings: SignerSettings,
) -> List[SigningTarget]:
    return SigningPlanBuilder(profiles, settings).build(app_dir)
