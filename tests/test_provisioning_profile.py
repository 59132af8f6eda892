import plistlib

import pytest

from adhocsign.src.core.errors import MalformedProfile, ProfileNotFound
from adhocsign.src.ipa.provisioning_profile import (
    PLIST_END_MARKER,
    PLIST_START_MARKER,
    ProvisioningProfile,
    find_marker_range,
)
from builders import (
    ENVELOPE_HEADER,
    ENVELOPE_TRAILER,
    app_entitlements,
    profile_bytes,
    profile_document,
    write_profile,
)


def test_find_marker_range_spans_to_last_end_marker():
    data = b"xx<plist a</plist> b</plist>yy"
    start, end = find_marker_range(data, PLIST_START_MARKER, PLIST_END_MARKER)

    assert data[start:end] == b"<plist a</plist> b</plist>"


def test_find_marker_range_missing_markers():
    assert find_marker_range(b"no markers here", PLIST_START_MARKER, PLIST_END_MARKER) is None
    assert find_marker_range(b"<plist>", PLIST_START_MARKER, PLIST_END_MARKER) is None
    assert find_marker_range(b"</plist> <plist", PLIST_START_MARKER, PLIST_END_MARKER) is None


def test_load_profile(tmp_path):
    entitlements = app_entitlements("com.example.main")
    path = write_profile(tmp_path / "main.mobileprovision", entitlements)

    profile = ProvisioningProfile.load(path)

    assert profile.path == path
    assert profile.entitlements == entitlements
    assert profile.name == "Test Profile"
    assert profile.team_id == "TEAM123456"
    assert profile.application_identifier == "TEAM123456.com.example.main"
    assert profile.bundle_id_pattern == "com.example.main"
    assert not profile.is_wildcard


def test_entitlements_xml_is_a_standalone_plist(tmp_path):
    entitlements = app_entitlements("com.example.main")
    path = write_profile(tmp_path / "main.mobileprovision", entitlements)

    xml = ProvisioningProfile.load(path).to_xml_bytes()

    assert xml.startswith(b"<?xml")
    assert ENVELOPE_HEADER not in xml
    assert plistlib.loads(xml) == entitlements
    # Key order of the profile is preserved
    assert list(plistlib.loads(xml)) == list(entitlements)


def test_entitlements_are_copied(tmp_path):
    path = write_profile(tmp_path / "p.mobileprovision", app_entitlements("com.example.main"))
    profile = ProvisioningProfile.load(path)

    profile.entitlements["keychain-access-groups"].append("mutated")

    assert "mutated" not in profile.entitlements["keychain-access-groups"]


def test_missing_profile(tmp_path):
    with pytest.raises(ProfileNotFound):
        ProvisioningProfile.load(tmp_path / "missing.mobileprovision")


def test_profile_without_plist(tmp_path):
    path = tmp_path / "garbage.mobileprovision"
    path.write_bytes(ENVELOPE_HEADER + b"\x00" * 64 + ENVELOPE_TRAILER)

    with pytest.raises(MalformedProfile):
        ProvisioningProfile.load(path)


def test_profile_with_broken_plist(tmp_path):
    path = tmp_path / "broken.mobileprovision"
    path.write_bytes(
        ENVELOPE_HEADER + b"<plist version=\"1.0\"><dict><key>a</key></plist>" + ENVELOPE_TRAILER
    )

    with pytest.raises(MalformedProfile):
        ProvisioningProfile.load(path)


def test_profile_without_entitlements(tmp_path):
    document = profile_document({})
    del document["Entitlements"]
    path = tmp_path / "noents.mobileprovision"
    path.write_bytes(profile_bytes(document))

    with pytest.raises(MalformedProfile) as excinfo:
        ProvisioningProfile.load(path)
    assert "Entitlements" in excinfo.value.reason


def test_wildcard_matching(tmp_path):
    wildcard = ProvisioningProfile.load(
        write_profile(
            tmp_path / "wild.mobileprovision",
            {"application-identifier": "TEAM123456.com.example.*"},
        )
    )

    assert wildcard.is_wildcard
    assert wildcard.matches_bundle_id("com.example.main")
    assert wildcard.matches_bundle_id("com.example.main.widget")
    assert not wildcard.matches_bundle_id("com.example.main", exact=True)
    assert not wildcard.matches_bundle_id("org.other.app")
