"""Result aggregation: accumulates stage and patch outcomes into a report."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from apk_patcher.core.models import (
    BoundPatch,
    FailedPatch,
    PatchingReport,
    PatchOutcome,
    Stage,
    StageOutcome,
)

T = TypeVar("T")


class ReportBuilder:
    """Append-only bookkeeping for one patching run.

    ``success`` starts true and can only ever be downgraded.
    """

    def __init__(self) -> None:
        self.package_name: Optional[str] = None
        self.package_version: Optional[str] = None
        self._success = True
        self._stages: list[StageOutcome] = []
        self._applied: list[BoundPatch] = []
        self._failed: list[FailedPatch] = []

    @property
    def success(self) -> bool:
        return self._success

    def record_stage(
        self, stage: Stage, success: bool, message: Optional[str] = None
    ) -> None:
        self._stages.append(StageOutcome(stage, success, message))
        if not success:
            self._success = False

    def record_patch(self, outcome: PatchOutcome) -> None:
        if outcome.success:
            self._applied.append(outcome.patch)
        else:
            self._failed.append(
                FailedPatch(outcome.patch, outcome.detail or "unknown error")
            )
            self._success = False

    def run_stage(self, stage: Stage, block: Callable[[], T]) -> T:
        """Run ``block`` as ``stage``, recording its outcome.

        Errors are recorded with their description and re-raised.
        """
        try:
            result = block()
        except BaseException as e:
            self.record_stage(stage, False, _describe(e))
            raise
        self.record_stage(stage, True)
        return result

    def build(self) -> PatchingReport:
        return PatchingReport(
            package_name=self.package_name,
            package_version=self.package_version,
            success=self._success,
            stages=tuple(self._stages),
            applied_patches=tuple(self._applied),
            failed_patches=tuple(self._failed),
        )


def _describe(error: BaseException) -> str:
    text = str(error)
    name = type(error).__name__
    return f"{name}: {text}" if text else name


# ── Serialization ────────────────────────────────────────────────────


def serialize_value(value: Any) -> Any:
    """Convert an option value into something ``json`` can encode."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple, set, frozenset)):
        return [serialize_value(v) for v in value]
    if isinstance(value, dict):
        for key in value:
            if not isinstance(key, str):
                raise TypeError(
                    "Map keys must be strings for serialization, "
                    f"but found: {type(key).__name__}"
                )
        return {k: serialize_value(v) for k, v in value.items()}
    return str(value)


def patch_to_dict(patch: BoundPatch) -> dict[str, Any]:
    data: dict[str, Any] = {}
    if patch.name is not None:
        data["name"] = patch.name
    else:
        data["index"] = patch.patch.index
    if patch.options:
        data["options"] = [
            {"key": key, "value": serialize_value(value)}
            for key, value in patch.options
        ]
    return data


def report_to_dict(report: PatchingReport) -> dict[str, Any]:
    return {
        "package_name": report.package_name,
        "package_version": report.package_version,
        "success": report.success,
        "stages": [
            {
                "stage": s.stage.value,
                "success": s.success,
                "message": s.message,
            }
            for s in report.stages
        ],
        "applied_patches": [patch_to_dict(p) for p in report.applied_patches],
        "failed_patches": [
            {"patch": patch_to_dict(f.patch), "reason": f.reason}
            for f in report.failed_patches
        ],
    }


def dumps(report: PatchingReport) -> str:
    return json.dumps(report_to_dict(report), indent=2)


def write_report(report: PatchingReport, path: str | Path) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps(report) + "\n")
    return path
