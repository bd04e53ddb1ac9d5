"""Patch bundle loading: ZIP archives holding a ``patches.json`` manifest."""

from __future__ import annotations

import json
import logging
import zipfile
from collections import Counter
from pathlib import Path
from typing import Any, Iterable, Optional

from apk_patcher.core.models import (
    CompatiblePackage,
    OptionType,
    Patch,
    PatchOption,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "patches.json"

_OPTION_TYPES = {t.value: t for t in OptionType}
# Aliases accepted from bundles written by other tooling.
_OPTION_TYPES.update({
    "boolean": OptionType.BOOL,
    "str": OptionType.STRING,
    "double": OptionType.FLOAT,
    "array": OptionType.LIST,
})


class BundleError(Exception):
    """Raised when a bundle is missing, unreadable or malformed."""


def load_bundles(paths: Iterable[str | Path]) -> list[Patch]:
    """Load and concatenate the patches of several bundles.

    Each patch's ``index`` is its position in the combined list, which is
    what index-based overrides refer to.
    """
    patches: list[Patch] = []
    for path in paths:
        for definition in _read_manifest(Path(path)):
            patches.append(_parse_patch(definition, len(patches), path))
    logger.info("Loaded %d patches", len(patches))
    return patches


def _read_manifest(path: Path) -> list[dict[str, Any]]:
    if not path.is_file():
        raise BundleError(f"Patch bundle {path} can't be found")
    try:
        with zipfile.ZipFile(path) as archive:
            try:
                raw = archive.read(MANIFEST_NAME)
            except KeyError:
                raise BundleError(
                    f"{path.name} does not contain {MANIFEST_NAME}"
                )
    except zipfile.BadZipFile as e:
        raise BundleError(f"{path.name} is not a valid bundle: {e}")

    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise BundleError(f"{path.name}: invalid {MANIFEST_NAME}: {e}")
    if not isinstance(data, list):
        raise BundleError(f"{path.name}: {MANIFEST_NAME} must be a list")
    return data


def _parse_patch(definition: Any, index: int, source: Any) -> Patch:
    if not isinstance(definition, dict):
        raise BundleError(f"{source}: patch #{index} is not an object")

    packages = definition.get("compatiblePackages")
    compatible: Optional[tuple[CompatiblePackage, ...]] = None
    if packages:
        compatible = tuple(_parse_package(p, index, source) for p in packages)

    return Patch(
        index=index,
        name=definition.get("name"),
        description=definition.get("description") or "",
        compatible_packages=compatible,
        options=tuple(
            _parse_option(o, index, source)
            for o in definition.get("options") or []
        ),
        use=bool(definition.get("use", True)),
    )


def _parse_package(entry: Any, index: int, source: Any) -> CompatiblePackage:
    if isinstance(entry, str):
        return CompatiblePackage(name=entry)
    if not isinstance(entry, dict) or not entry.get("name"):
        raise BundleError(
            f"{source}: patch #{index} has a compatible package without a name"
        )
    versions = entry.get("versions")
    return CompatiblePackage(
        name=entry["name"],
        versions=None if versions is None else tuple(str(v) for v in versions),
    )


def _parse_option(entry: Any, index: int, source: Any) -> PatchOption:
    if not isinstance(entry, dict) or not entry.get("key"):
        raise BundleError(f"{source}: patch #{index} has an option without a key")
    type_name = str(entry.get("type", "string")).lower()
    option_type = _OPTION_TYPES.get(type_name)
    if option_type is None:
        raise BundleError(
            f"{source}: option {entry['key']!r} has unknown type {type_name!r}"
        )
    return PatchOption(
        key=entry["key"],
        title=entry.get("title") or entry["key"],
        description=entry.get("description") or "",
        type=option_type,
        default=entry.get("default"),
        required=bool(entry.get("required", False)),
    )


def filter_for_package(patches: Iterable[Patch], package_name: str) -> list[Patch]:
    """Universal patches plus those naming ``package_name`` for any version."""
    return [
        p for p in patches
        if p.is_universal
        or any(c.name == package_name for c in p.compatible_packages or ())
    ]


def compatible_versions(
    patches: Iterable[Patch],
    package_names: Optional[Iterable[str]] = None,
) -> dict[str, list[tuple[str, int]]]:
    """Count, per package, how many patches support each version.

    Versions are returned most-supported first. Packages declared without a
    version list are reported with an empty list.
    """
    wanted = set(package_names) if package_names else None
    counts: dict[str, Counter] = {}
    for patch in patches:
        for package in patch.compatible_packages or ():
            if wanted is not None and package.name not in wanted:
                continue
            counter = counts.setdefault(package.name, Counter())
            counter.update(package.versions or ())
    return {
        name: sorted(counter.items(), key=lambda kv: (-kv[1], kv[0]))
        for name, counter in sorted(counts.items())
    }
