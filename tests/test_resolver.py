"""Tests for apk_patcher.core.resolver: compatibility resolution."""

from __future__ import annotations

import logging

import pytest

from apk_patcher.core.models import CompatiblePackage, Patch, Selection
from apk_patcher.core.resolver import (
    DuplicateCompatibilityError,
    PatchSelectionError,
    resolve,
    validate_selections,
)


@pytest.fixture
def abc_bundle() -> list[Patch]:
    """A universal, B supports com.x 1.0, C supports no version of com.x."""
    return [
        Patch(0, "A"),
        Patch(1, "B", compatible_packages=(CompatiblePackage("com.x", ("1.0",)),)),
        Patch(2, "C", compatible_packages=(CompatiblePackage("com.x", ()),)),
    ]


def _names(resolved) -> list[str]:
    return [p.identity for p in resolved]


# ---------------------------------------------------------------------------
# Compatibility
# ---------------------------------------------------------------------------

class TestCompatibility:
    def test_matching_version(self, abc_bundle):
        assert _names(resolve(abc_bundle, "com.x", "1.0")) == ["A", "B"]

    def test_version_mismatch(self, abc_bundle):
        assert _names(resolve(abc_bundle, "com.x", "2.0")) == ["A"]

    def test_force_ignores_version_mismatch(self, abc_bundle):
        result = resolve(abc_bundle, "com.x", "2.0", force=True)
        assert _names(result) == ["A", "B"]

    def test_empty_versions_excluded_even_when_forced(self, abc_bundle):
        for force in (False, True):
            result = resolve(abc_bundle, "com.x", "1.0", force=force)
            assert "C" not in _names(result)

    def test_empty_versions_excluded_even_when_enabled(self, abc_bundle):
        result = resolve(abc_bundle, "com.x", "1.0", [Selection.enable(name="C")])
        assert "C" not in _names(result)

    def test_universal_patch_included_for_any_package(self, abc_bundle):
        for package, version in [("com.x", "1.0"), ("com.y", "9"), ("", "")]:
            assert "A" in _names(resolve(abc_bundle, package, version))

    def test_force_does_not_ignore_package_mismatch(self, abc_bundle):
        result = resolve(abc_bundle, "com.other", "1.0", force=True)
        assert _names(result) == ["A"]

    def test_any_version_entry(self):
        patches = [Patch(0, "Any", compatible_packages=(CompatiblePackage("com.x"),))]
        assert _names(resolve(patches, "com.x", "42")) == ["Any"]

    def test_selects_entry_for_target_package(self):
        patches = [Patch(0, "Multi", compatible_packages=(
            CompatiblePackage("com.a", ("1",)),
            CompatiblePackage("com.b", ("2",)),
        ))]
        assert _names(resolve(patches, "com.b", "2")) == ["Multi"]
        assert _names(resolve(patches, "com.b", "1")) == []

    def test_duplicate_package_entry_is_an_error(self):
        patches = [Patch(0, "Dup", compatible_packages=(
            CompatiblePackage("com.x", ("1.0",)),
            CompatiblePackage("com.x", ("2.0",)),
        ))]
        with pytest.raises(DuplicateCompatibilityError, match="Dup"):
            resolve(patches, "com.x", "1.0")

    def test_duplicate_entry_for_other_package_is_ignored(self):
        patches = [Patch(0, "Dup", compatible_packages=(
            CompatiblePackage("com.y"),
            CompatiblePackage("com.y"),
        ))]
        assert _names(resolve(patches, "com.x", "1.0")) == []

    def test_preserves_bundle_order(self, sample_patches):
        result = resolve(sample_patches, "com.example.app", "1.0")
        assert [p.index for p in result] == [0, 2, 4]


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------

class TestOverrides:
    def test_default_off_patch_excluded(self, sample_patches):
        result = resolve(sample_patches, "com.example.app", "1.0")
        assert "Custom branding" not in result.names

    def test_enable_by_name(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.enable(name="Custom branding")],
        )
        assert "Custom branding" in result.names

    def test_enable_by_index(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0", [Selection.enable(index=1)],
        )
        assert "Custom branding" in result.names

    def test_disable_by_name(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.disable(name="Hide ads")],
        )
        assert "Hide ads" not in result.names

    def test_disable_unnamed_patch_by_index(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0", [Selection.disable(index=4)],
        )
        assert "#4" not in result.names

    def test_disable_by_name_wins_over_enable_by_index(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.enable(index=1), Selection.disable(name="Custom branding")],
        )
        assert "Custom branding" not in result.names

    def test_disable_by_index_wins_over_enable_by_name(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.enable(name="Hide ads"), Selection.disable(index=0)],
        )
        assert "Hide ads" not in result.names

    def test_exclusive_excludes_default_on(self, sample_patches):
        result = resolve(sample_patches, "com.example.app", "1.0", exclusive=True)
        assert len(result) == 0

    def test_exclusive_keeps_enabled(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.enable(name="Spoof signature")], exclusive=True,
        )
        assert result.names == ["Spoof signature"]

    def test_enable_does_not_bypass_compatibility(self, sample_patches):
        result = resolve(
            sample_patches, "com.example.app", "1.0",
            [Selection.enable(name="Other app fix")],
        )
        assert "Other app fix" not in result.names


# ---------------------------------------------------------------------------
# Exclusion reasons
# ---------------------------------------------------------------------------

class TestExclusions:
    def _reasons(self, result) -> dict[str, str]:
        return {e.patch.identity: e.reason for e in result.excluded}

    def test_reasons(self, abc_bundle):
        bundle = abc_bundle + [Patch(3, "Off", use=False)]
        result = resolve(
            bundle, "com.x", "2.0", [Selection.disable(name="A")],
        )
        reasons = self._reasons(result)
        assert reasons["A"] == "disabled manually"
        assert reasons["B"] == (
            "incompatible with com.x 2.0 but compatible with com.x 1.0"
        )
        assert reasons["C"] == 'incompatible with "com.x"'
        assert reasons["Off"] == "disabled"

    def test_package_mismatch_reason(self, sample_patches):
        result = resolve(sample_patches, "com.example.app", "1.0")
        assert self._reasons(result)["Other app fix"] == (
            "incompatible with com.example.app. "
            "It is only compatible with com.other.app"
        )

    def test_version_mismatch_logged_as_warning(self, abc_bundle, caplog):
        with caplog.at_level(logging.DEBUG, logger="apk_patcher.core.resolver"):
            resolve(abc_bundle, "com.x", "2.0")
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert any('"B" incompatible' in r.getMessage() for r in warnings)

    def test_every_patch_accounted_for(self, sample_patches):
        result = resolve(sample_patches, "com.example.app", "1.1")
        assert len(result) + len(result.excluded) == len(sample_patches)


# ---------------------------------------------------------------------------
# validate_selections
# ---------------------------------------------------------------------------

class TestValidateSelections:
    def test_in_range(self, sample_patches):
        validate_selections(sample_patches, [Selection.enable(index=4)])

    def test_out_of_range(self, sample_patches):
        with pytest.raises(PatchSelectionError, match="out of range"):
            validate_selections(sample_patches, [Selection.disable(index=5)])

    def test_negative(self, sample_patches):
        with pytest.raises(PatchSelectionError):
            validate_selections(sample_patches, [Selection.enable(index=-1)])

    def test_names_not_checked(self, sample_patches):
        validate_selections(sample_patches, [Selection.enable(name="Unknown")])
