import plistlib
from datetime import datetime, timedelta, timezone
import subprocess
from pathlib import Path

import pytest

from adhocsign.src.core.certificate import Certificate, CertificateStore
from adhocsign.src.core.errors import (
    BackendError,
    MissingCertificate,
    MissingEntitlements,
    SigningOrderError,
    TargetSignError,
)
from adhocsign.src.core.signer import (
    EMBEDDED_PROFILE_NAME,
    RcodesignBackend,
    Signer,
    SigningContext,
)
from adhocsign.src.core.signer_settings import SignerSettings
from adhocsign.src.core.signing_plan import SigningTarget, build_signing_plan
from adhocsign.src.ipa.bundle_inspector import ComponentKind
from adhocsign.src.ipa.provisioning_profile import ProvisioningProfile
from builders import (
    RecordingBackend,
    app_entitlements,
    cert_pem,
    make_app,
    make_certificate,
    pkcs8_pem,
    write_profile,
)


@pytest.fixture
def app(tmp_path):
    return make_app(tmp_path / "input")


@pytest.fixture
def profile(tmp_path):
    return ProvisioningProfile.load(
        write_profile(tmp_path / "main.mobileprovision", app_entitlements("com.example.main"))
    )


@pytest.fixture
def certificate(identity_pem):
    return CertificateStore.load([identity_pem])


def snapshot(directory: Path):
    return {p: p.read_bytes() for p in sorted(directory.rglob("*")) if p.is_file()}


def test_sign_appex_before_main_app(app, profile, certificate):
    backend = RecordingBackend()
    targets = build_signing_plan(app, [profile], SignerSettings())

    result = Signer(certificate, SignerSettings(), backend).sign(targets)

    assert backend.signed_names == ["Kit.framework", "Widget.appex", "Main.app"]
    assert result.signed == [t.path for t in targets]
    assert result.skipped == []
    assert all(not call["adhoc"] for call in backend.calls)
    assert all(not call["notarization"] for call in backend.calls)


def test_entitlements_and_profile_are_installed(app, profile, certificate):
    backend = RecordingBackend()
    targets = build_signing_plan(app, [profile], SignerSettings())

    Signer(certificate, SignerSettings(), backend).sign(targets)

    calls = {call["path"].name: call for call in backend.calls}
    assert calls["Kit.framework"]["entitlements"] is None
    assert calls["Main.app"]["entitlements"] == profile.entitlements
    assert (app / EMBEDDED_PROFILE_NAME).read_bytes() == profile.path.read_bytes()
    assert not (app / "Frameworks" / "Kit.framework" / EMBEDDED_PROFILE_NAME).exists()


def test_reversed_order_is_rejected_before_signing(tmp_path, certificate):
    backend = RecordingBackend()
    targets = [
        SigningTarget(tmp_path / "Main.app", ComponentKind.APP, 0, entitlements={}),
        SigningTarget(
            tmp_path / "Main.app" / "PlugIns" / "W.appex",
            ComponentKind.APP_EXTENSION,
            1,
            entitlements={},
        ),
    ]

    with pytest.raises(SigningOrderError):
        Signer(certificate, SignerSettings(), backend).sign(targets)
    assert backend.calls == []


def test_expired_certificate_still_signs(tmp_path, app, profile, rsa_key):
    now = datetime.now(timezone.utc)
    expired = make_certificate(
        rsa_key, not_before=now - timedelta(days=400), not_after=now - timedelta(days=1)
    )
    pem = tmp_path / "expired.pem"
    pem.write_bytes(cert_pem(expired) + pkcs8_pem(rsa_key))
    backend = RecordingBackend()

    result = Signer(CertificateStore.load([pem]), SignerSettings(), backend).sign(
        build_signing_plan(app, [profile], SignerSettings())
    )

    assert len(result.signed) == 3
    assert any("expired" in w for w in result.warnings)


def test_require_identity_without_certificate(app, profile):
    backend = RecordingBackend()
    settings = SignerSettings(require_identity=True)
    targets = build_signing_plan(app, [profile], settings)
    before = snapshot(app)

    with pytest.raises(MissingCertificate):
        Signer(Certificate(), settings, backend).sign(targets)

    assert backend.calls == []
    assert snapshot(app) == before


def test_missing_identity_signs_adhoc(app, profile):
    backend = RecordingBackend()
    targets = build_signing_plan(app, [profile], SignerSettings())

    result = Signer(None, SignerSettings(), backend).sign(targets)

    assert all(call["adhoc"] for call in backend.calls)
    assert any("ad-hoc" in w for w in result.warnings)


def test_shallow_signing_skips_nested_targets(app, profile, certificate):
    backend = RecordingBackend()
    settings = SignerSettings(sign_shallow=True)
    targets = build_signing_plan(app, [profile], settings)

    result = Signer(certificate, settings, backend).sign(targets)

    assert backend.signed_names == ["Main.app"]
    assert [p.name for p in result.skipped] == ["Kit.framework", "Widget.appex"]
    assert backend.calls[0]["shallow"]


def test_failure_aborts_remaining_targets(app, profile, certificate):
    backend = RecordingBackend(fail_on="Widget.appex")
    targets = build_signing_plan(app, [profile], SignerSettings())

    with pytest.raises(TargetSignError) as excinfo:
        Signer(certificate, SignerSettings(), backend).sign(targets)

    assert excinfo.value.target.path.name == "Widget.appex"
    assert isinstance(excinfo.value.cause, BackendError)
    assert backend.signed_names == ["Kit.framework", "Widget.appex"]


def test_primary_target_without_entitlements_fails(tmp_path, certificate):
    bundle = tmp_path / "Main.app"
    bundle.mkdir()
    backend = RecordingBackend()

    with pytest.raises(TargetSignError) as excinfo:
        Signer(certificate, SignerSettings(), backend).sign(
            [SigningTarget(bundle, ComponentKind.APP, 0)]
        )

    assert isinstance(excinfo.value.cause, MissingEntitlements)
    assert backend.calls == []


def test_info_plist_is_patched(app, profile, certificate):
    settings = SignerSettings(custom_name="Renamed", custom_identifier="com.new")
    targets = build_signing_plan(app, [profile], settings)

    Signer(certificate, settings, RecordingBackend()).sign(targets)

    with open(app / "Info.plist", "rb") as f:
        main_info = plistlib.load(f)
    with open(app / "PlugIns" / "Widget.appex" / "Info.plist", "rb") as f:
        widget_info = plistlib.load(f)
    assert main_info["CFBundleDisplayName"] == "Renamed"
    assert main_info["CFBundleIdentifier"] == "com.new"
    assert widget_info["CFBundleIdentifier"] == "com.new.widget"
    assert widget_info["CFBundleName"] == "Widget"


def test_contexts_are_not_shared(certificate):
    signer = Signer(certificate, SignerSettings(), RecordingBackend())

    first = signer.build_context()
    first.add_warning("only here")

    assert signer.build_context().warnings == []


def test_rcodesign_command_line(tmp_path, certificate):
    context = SigningContext()
    certificate.attach_to_signing_context(context)
    context.set_team_id_from_signing_certificate()
    backend = RcodesignBackend("/opt/bin/rcodesign")

    cmd = backend.build_command(
        tmp_path / "Main.app", context, tmp_path / "ents.plist", tmp_path / "id.pem"
    )

    assert cmd == [
        "/opt/bin/rcodesign",
        "sign",
        "--shallow",
        "--pem-file",
        str(tmp_path / "id.pem"),
        "--team-name",
        "TEAM123456",
        "--entitlements-xml-file",
        str(tmp_path / "ents.plist"),
        str(tmp_path / "Main.app"),
    ]


def test_rcodesign_adhoc_command_line(tmp_path):
    cmd = RcodesignBackend().build_command(tmp_path / "Kit.dylib", SigningContext(), None, None)

    assert cmd == ["rcodesign", "sign", "--shallow", str(tmp_path / "Kit.dylib")]


def test_rcodesign_failures_become_backend_errors(tmp_path, monkeypatch, certificate):
    context = SigningContext()
    certificate.attach_to_signing_context(context)
    written = {}

    def fake_run(cmd, **kwargs):
        pem_path = Path(cmd[cmd.index("--pem-file") + 1])
        written["pem"] = pem_path.read_bytes()
        written["mode"] = pem_path.stat().st_mode & 0o777
        raise subprocess.CalledProcessError(1, cmd, output="", stderr="boom")

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(BackendError) as excinfo:
        RcodesignBackend().sign(tmp_path / "Main.app", context)

    assert "boom" in str(excinfo.value)
    assert b"BEGIN CERTIFICATE" in written["pem"]
    assert b"BEGIN PRIVATE KEY" in written["pem"]
    assert written["mode"] == 0o600


def test_missing_rcodesign_binary(tmp_path, monkeypatch):
    def fake_run(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr(subprocess, "run", fake_run)

    with pytest.raises(BackendError):
        RcodesignBackend("not-installed").sign(tmp_path / "Main.app", SigningContext())


def test_unreadable_info_plist_becomes_target_error(app, profile, certificate):
    settings = SignerSettings(custom_name="Renamed")
    targets = build_signing_plan(app, [profile], settings)
    (app / "Info.plist").write_bytes(b"garbage")
    backend = RecordingBackend()

    with pytest.raises(TargetSignError) as excinfo:
        Signer(certificate, settings, backend).sign(targets)

    assert excinfo.value.target.path.name == "Main.app"
    assert isinstance(excinfo.value.cause, ValueError)
    assert backend.signed_names == ["Kit.framework", "Widget.appex"]
