"""Patch engine interface: the external component that transforms APKs."""

from __future__ import annotations

import importlib
import traceback
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Sequence

from apk_patcher.core.models import BoundPatch


@dataclass(frozen=True)
class PatchResult:
    """One event from the engine: a patch either applied or failed."""

    patch: BoundPatch
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, patch: BoundPatch, exc: BaseException) -> PatchResult:
        detail = "".join(
            traceback.format_exception(type(exc), exc, exc.__traceback__)
        )
        return cls(patch, detail.rstrip() or repr(exc))


class EngineSession(ABC):
    """An opened artifact. Use as a context manager."""

    @property
    @abstractmethod
    def package_name(self) -> str: ...

    @property
    @abstractmethod
    def package_version(self) -> str: ...

    @abstractmethod
    def execute(self, patches: Sequence[BoundPatch]) -> Iterator[PatchResult]:
        """Apply ``patches`` in order, yielding one result per patch.

        The sequence is finite; exhaustion means the engine is done.
        """

    @abstractmethod
    def rebuild(self, target: Path) -> None:
        """Write the accumulated changes onto ``target`` in place."""

    def close(self) -> None:
        pass

    def __enter__(self) -> EngineSession:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class PatchEngine(ABC):
    @abstractmethod
    def open(self, artifact: Path, temp_dir: Path) -> EngineSession: ...


class EngineLoadError(ImportError):
    """The configured engine cannot be imported or is not a PatchEngine."""


def load_engine(spec: str) -> PatchEngine:
    """Instantiate an engine from ``"package.module:attribute"``.

    ``attribute`` may be a PatchEngine subclass, a factory returning one, or
    an engine instance.
    """
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise EngineLoadError(
            f"Invalid engine {spec!r}, expected 'package.module:attribute'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise EngineLoadError(f"Cannot import engine module {module_name!r}: {e}")

    target = getattr(module, attr, None)
    if target is None:
        raise EngineLoadError(f"Module {module_name!r} has no attribute {attr!r}")

    engine = target if isinstance(target, PatchEngine) else target()
    if not isinstance(engine, PatchEngine):
        raise EngineLoadError(
            f"{spec} produced {type(engine).__name__}, not a PatchEngine"
        )
    return engine
