"""Option binding: attach caller-supplied option values to resolved patches."""

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional, Sequence

from apk_patcher.core.models import BoundPatch, Patch, Selection
from apk_patcher.core.resolver import PatchSelectionError

logger = logging.getLogger(__name__)


def bind(
    resolved: Iterable[Patch],
    selections: Iterable[Selection],
    patches: Sequence[Patch],
) -> tuple[BoundPatch, ...]:
    """Return ``resolved`` as BoundPatches carrying their runtime options.

    Each patch starts from its declared defaults; option pairs from enable
    overrides are merged on top. Values stay opaque: coercion to the option's
    declared type is up to the patch engine.
    """
    resolved = list(resolved)
    overrides: dict[int, dict[str, Any]] = {}

    for selection in sorted(selections, key=_selection_order):
        if not selection.is_enable or not selection.options:
            continue
        target = _target_of(selection, patches)
        if target is None:
            logger.debug(
                "No patch matches %s, ignoring its options",
                selection.name or f"#{selection.index}",
            )
            continue
        if target not in resolved:
            logger.debug(
                '"%s" is not selected, ignoring its options', target.identity
            )
            continue
        overrides.setdefault(target.index, {}).update(selection.options)

    bound = []
    for patch in resolved:
        values = patch.default_options()
        values.update(overrides.get(patch.index, {}))
        bound.append(BoundPatch(patch, tuple(values.items())))
    return tuple(bound)


def _selection_order(selection: Selection) -> tuple[str, int]:
    return (
        selection.name or "",
        selection.index if selection.index is not None else -1,
    )


def _target_of(selection: Selection, patches: Sequence[Patch]) -> Optional[Patch]:
    if selection.index is not None:
        if 0 <= selection.index < len(patches):
            return patches[selection.index]
        return None
    for patch in patches:
        if patch.name == selection.name:
            return patch
    return None


def parse_option_assignment(raw: str) -> tuple[str, str, Optional[str]]:
    """Split ``PATCH:key=value`` into (patch, key, value).

    A bare ``PATCH:key`` yields a ``None`` value.
    """
    patch, sep, assignment = raw.partition(":")
    if not sep or not patch.strip() or not assignment:
        raise PatchSelectionError(
            f"Invalid option {raw!r}, expected PATCH:key=value"
        )
    key, eq, value = assignment.partition("=")
    if not key:
        raise PatchSelectionError(f"Invalid option {raw!r}, missing key")
    return patch.strip(), key, value if eq else None


def build_selections(
    enable: Iterable[str] = (),
    enable_index: Iterable[int] = (),
    disable: Iterable[str] = (),
    disable_index: Iterable[int] = (),
    options: Iterable[str] = (),
) -> frozenset[Selection]:
    """Collect command-line overrides into a set of Selections.

    ``options`` entries target an enabled patch by name, or by index when
    the patch part is a number given to ``--enable-index``.
    """
    enable = list(enable)
    enable_index = list(enable_index)
    by_name: dict[str, dict[str, Any]] = {name: {} for name in enable}
    by_index: dict[int, dict[str, Any]] = {i: {} for i in enable_index}

    for raw in options:
        patch, key, value = parse_option_assignment(raw)
        if patch in by_name:
            by_name[patch][key] = value
        elif patch.isdigit() and int(patch) in by_index:
            by_index[int(patch)][key] = value
        else:
            raise PatchSelectionError(
                f"Option {key!r} targets {patch!r}, which is not enabled "
                "with --enable or --enable-index"
            )

    selections = {Selection.enable(name=n, options=o) for n, o in by_name.items()}
    selections |= {Selection.enable(index=i, options=o) for i, o in by_index.items()}
    selections |= {Selection.disable(name=n) for n in disable}
    selections |= {Selection.disable(index=i) for i in disable_index}
    return frozenset(selections)
