"""Core data models for apk-patcher."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class OptionType(Enum):
    STRING = "string"
    BOOL = "bool"
    INT = "int"
    LONG = "long"
    FLOAT = "float"
    LIST = "list"


@dataclass(frozen=True)
class CompatiblePackage:
    name: str
    # None: any version. Empty tuple: no version at all.
    versions: Optional[tuple[str, ...]] = None


@dataclass(frozen=True)
class PatchOption:
    key: str
    title: str = ""
    description: str = ""
    type: OptionType = OptionType.STRING
    default: Any = field(default=None, hash=False)
    required: bool = False


@dataclass(frozen=True)
class Patch:
    index: int
    name: Optional[str]
    description: str = ""
    # None: universal patch without package constraints.
    compatible_packages: Optional[tuple[CompatiblePackage, ...]] = None
    options: tuple[PatchOption, ...] = ()
    use: bool = True

    @property
    def identity(self) -> str:
        """Name when present, otherwise the ordinal position."""
        return self.name if self.name else f"#{self.index}"

    @property
    def is_universal(self) -> bool:
        return not self.compatible_packages

    def default_options(self) -> dict[str, Any]:
        return {opt.key: opt.default for opt in self.options}

    def __str__(self) -> str:
        return self.identity


class SelectionAction(Enum):
    ENABLE = "enable"
    DISABLE = "disable"


@dataclass(frozen=True)
class Selection:
    """One caller override: enable/disable a patch by name or by index."""

    action: SelectionAction
    name: Optional[str] = None
    index: Optional[int] = None
    # (key, value) pairs, only meaningful when enabling. Values may be
    # lists, so they take part in equality but not in the hash.
    options: tuple[tuple[str, Any], ...] = field(default=(), hash=False)

    def __post_init__(self) -> None:
        if (self.name is None) == (self.index is None):
            raise ValueError("A selection needs exactly one of name or index")

    @classmethod
    def enable(cls, name: Optional[str] = None, index: Optional[int] = None,
               options: Optional[dict[str, Any]] = None) -> Selection:
        return cls(
            SelectionAction.ENABLE, name, index,
            tuple((options or {}).items()),
        )

    @classmethod
    def disable(cls, name: Optional[str] = None,
                index: Optional[int] = None) -> Selection:
        return cls(SelectionAction.DISABLE, name, index)

    @property
    def is_enable(self) -> bool:
        return self.action is SelectionAction.ENABLE

    def matches(self, patch: Patch) -> bool:
        if self.index is not None:
            return self.index == patch.index
        return patch.name is not None and self.name == patch.name


@dataclass(frozen=True)
class BoundPatch:
    """A resolved patch together with the option values it will run with."""

    patch: Patch
    options: tuple[tuple[str, Any], ...] = field(default=(), hash=False)

    @property
    def name(self) -> Optional[str]:
        return self.patch.name

    @property
    def identity(self) -> str:
        return self.patch.identity

    def options_dict(self) -> dict[str, Any]:
        return dict(self.options)

    def __str__(self) -> str:
        return self.patch.identity


class Stage(Enum):
    CONVERT_CONTAINER = "convert_container"
    APPLY_PATCHES = "apply_patches"
    REBUILD_ARTIFACT = "rebuild_artifact"
    SIGN_ARTIFACT = "sign_artifact"
    INSTALL = "install"


@dataclass(frozen=True)
class StageOutcome:
    stage: Stage
    success: bool
    message: Optional[str] = None


@dataclass(frozen=True)
class PatchOutcome:
    patch: BoundPatch
    success: bool
    detail: Optional[str] = None


@dataclass(frozen=True)
class FailedPatch:
    patch: BoundPatch
    reason: str


@dataclass(frozen=True)
class PatchingReport:
    package_name: Optional[str]
    package_version: Optional[str]
    success: bool
    stages: tuple[StageOutcome, ...] = ()
    applied_patches: tuple[BoundPatch, ...] = ()
    failed_patches: tuple[FailedPatch, ...] = ()


class DeviceStatus(Enum):
    READY = "device"
    UNAUTHORIZED = "unauthorized"
    OFFLINE = "offline"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, token: str) -> DeviceStatus:
        for status in cls:
            if status.value == token:
                return status
        return cls.UNKNOWN


@dataclass(frozen=True)
class Device:
    id: str
    status: DeviceStatus
    model: Optional[str] = None
    architecture: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status is DeviceStatus.READY

    @property
    def display_name(self) -> str:
        return self.model if self.model and self.model.strip() else self.id

    @property
    def display_name_with_status(self) -> str:
        name = self.display_name
        if self.status is DeviceStatus.READY:
            arch = f" ({self.architecture})" if self.architecture else ""
            return f"{name}{arch} (Connected)"
        if self.status is DeviceStatus.UNAUTHORIZED:
            return f"{name} (Unauthorized - check device)"
        if self.status is DeviceStatus.OFFLINE:
            return f"{name} (Offline)"
        return f"{name} (Unknown status)"


@dataclass(frozen=True)
class DeviceTarget:
    """Where the install stage should send the artifact."""

    serial: Optional[str] = None  # None or "": pick the single ready device
    mount: bool = False


@dataclass(frozen=True)
class MonitorState:
    devices: tuple[Device, ...] = ()
    selected: Optional[Device] = None
    # None until the first bridge probe has run.
    bridge_available: Optional[bool] = None

    @property
    def ready_devices(self) -> tuple[Device, ...]:
        return tuple(d for d in self.devices if d.is_ready)


@dataclass
class SelectionRequest:
    """Everything the resolver needs apart from the target package."""

    patches: list[Patch]
    selections: frozenset[Selection] = field(default_factory=frozenset)
    exclusive: bool = False
    force: bool = False
