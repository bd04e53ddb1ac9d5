"""Compatibility resolver: decides which bundle patches run for a package."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from apk_patcher.core.models import CompatiblePackage, Patch, Selection

logger = logging.getLogger(__name__)


class PatchSelectionError(ValueError):
    """Raised for overrides or metadata that make selection impossible."""


class DuplicateCompatibilityError(PatchSelectionError):
    """A patch declares the same target package more than once."""


@dataclass(frozen=True)
class Exclusion:
    patch: Patch
    reason: str


@dataclass(frozen=True)
class ResolvedPatchSet:
    patches: tuple[Patch, ...]
    excluded: tuple[Exclusion, ...] = ()

    def __iter__(self):
        return iter(self.patches)

    def __len__(self) -> int:
        return len(self.patches)

    def __contains__(self, patch: object) -> bool:
        return patch in self.patches

    @property
    def names(self) -> list[str]:
        return [p.identity for p in self.patches]


def validate_selections(
    patches: Sequence[Patch], selections: Iterable[Selection]
) -> None:
    """Fail fast on index overrides that point outside the bundle."""
    for selection in selections:
        if selection.index is not None and not (
            0 <= selection.index < len(patches)
        ):
            raise PatchSelectionError(
                f"Patch index {selection.index} is out of range "
                f"(bundle has {len(patches)} patches)"
            )


def resolve(
    patches: Sequence[Patch],
    package_name: str,
    package_version: str,
    selections: Iterable[Selection] = (),
    exclusive: bool = False,
    force: bool = False,
) -> ResolvedPatchSet:
    """Return the ordered subset of ``patches`` to apply to the package."""
    selections = list(selections)
    enabled = [s for s in selections if s.is_enable]
    disabled = [s for s in selections if not s.is_enable]

    included: list[Patch] = []
    excluded: list[Exclusion] = []

    def exclude(patch: Patch, reason: str, level: int) -> None:
        logger.log(level, '"%s" %s', patch.identity, reason)
        excluded.append(Exclusion(patch, reason))

    for patch in patches:
        if any(s.matches(patch) for s in disabled):
            exclude(patch, "disabled manually", logging.INFO)
            continue

        incompatibility = _check_compatibility(
            patch, package_name, package_version, force
        )
        if incompatibility is not None:
            reason, level = incompatibility
            exclude(patch, reason, level)
            continue

        manually_enabled = any(s.matches(patch) for s in enabled)
        if not (manually_enabled or (patch.use and not exclusive)):
            exclude(patch, "disabled", logging.INFO)
            continue

        included.append(patch)
        logger.debug('"%s" added', patch.identity)

    return ResolvedPatchSet(tuple(included), tuple(excluded))


def _check_compatibility(
    patch: Patch, package_name: str, package_version: str, force: bool
) -> Optional[tuple[str, int]]:
    """Return (reason, log level) when the patch cannot run, else None."""
    if patch.is_universal:
        logger.debug('"%s" has no package constraints', patch.identity)
        return None

    entry = _entry_for(patch, package_name)
    if entry is None:
        supported = ", ".join(c.name for c in patch.compatible_packages or ())
        return (
            f"incompatible with {package_name}. "
            f"It is only compatible with {supported}",
            logging.DEBUG,
        )

    if entry.versions is not None and len(entry.versions) == 0:
        return f'incompatible with "{package_name}"', logging.WARNING

    if force or entry.versions is None or package_version in entry.versions:
        return None

    return (
        f"incompatible with {package_name} {package_version} "
        f"but compatible with {package_name} {', '.join(entry.versions)}",
        logging.WARNING,
    )


def _entry_for(patch: Patch, package_name: str) -> Optional[CompatiblePackage]:
    matches = [
        c for c in patch.compatible_packages or () if c.name == package_name
    ]
    if len(matches) > 1:
        raise DuplicateCompatibilityError(
            f'"{patch.identity}" declares {package_name} '
            f"{len(matches)} times"
        )
    return matches[0] if matches else None
