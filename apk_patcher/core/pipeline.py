"""Pipeline runner: convert, patch, rebuild, sign and install an APK."""

from __future__ import annotations

import logging
import shutil
import threading
from contextlib import ExitStack
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from apk_patcher.core.engine import EngineSession, PatchEngine, PatchResult
from apk_patcher.core.merge import ContainerMerger, MergeError, is_container
from apk_patcher.core.models import (
    BoundPatch,
    DeviceTarget,
    PatchingReport,
    PatchOutcome,
    SelectionRequest,
    Stage,
)
from apk_patcher.core.options import bind
from apk_patcher.core.report import ReportBuilder
from apk_patcher.core.resolver import resolve, validate_selections
from apk_patcher.core.signing import KeytoolSigner, Signer, SigningConfig
from apk_patcher.devices.adb import AdbClient, InstallResult

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]


class PatchingCancelled(Exception):
    def __init__(self) -> None:
        super().__init__("cancelled")


class InstallError(RuntimeError):
    def __init__(self, result: InstallResult):
        super().__init__(result.message or result.status.value)
        self.result = result


class CancellationToken:
    """Cooperative cancellation shared between a UI thread and a run."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise PatchingCancelled()


class PipelineRunner:
    """Runs the stages of one patching operation strictly in sequence.

    A failing patch is recorded and the run continues. A failing stage is
    recorded and its error re-raised, which stops the remaining stages.
    ``report`` always reflects how far the last run got.
    """

    def __init__(
        self,
        engine: PatchEngine,
        signer: Optional[Signer] = None,
        merger: Optional[ContainerMerger] = None,
        adb: Optional[AdbClient] = None,
        console: Optional[Console] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ):
        self.engine = engine
        self.signer = signer or KeytoolSigner()
        self.merger = merger
        self.adb = adb
        self.console = console or Console()
        self.on_progress = on_progress
        self.cancel_token = cancel_token or CancellationToken()
        self._builder = ReportBuilder()

    @property
    def report(self) -> PatchingReport:
        return self._builder.build()

    def run(
        self,
        input_artifact: str | Path,
        selection: SelectionRequest,
        output: str | Path,
        signing: Optional[SigningConfig] = None,
        device: Optional[DeviceTarget] = None,
        temp_dir: Optional[str | Path] = None,
        purge: bool = False,
    ) -> PatchingReport:
        """Patch ``input_artifact`` into ``output``.

        ``signing=None`` produces an unsigned artifact; ``device=None`` skips
        installation. Mount installs are never signed.
        """
        input_artifact = Path(input_artifact)
        output = Path(output)
        temp_dir = (
            Path(temp_dir) if temp_dir
            else output.parent / f"{output.stem}-temporary-files"
        )
        builder = self._builder = ReportBuilder()

        if not input_artifact.is_file():
            raise FileNotFoundError(f"APK file {input_artifact} does not exist")
        validate_selections(selection.patches, selection.selections)

        merged: Optional[Path] = None
        try:
            self._check_cancelled()
            artifact = input_artifact
            if is_container(input_artifact):
                merged = builder.run_stage(
                    Stage.CONVERT_CONTAINER,
                    lambda: self._convert(input_artifact, temp_dir),
                )
                artifact = merged

            mount = device is not None and device.mount
            # Unsigned and mount outputs are final once rebuilt.
            final = output if signing is None or mount else None
            rebuilt = temp_dir / "patched.apk"

            self._check_cancelled()
            with ExitStack() as stack:
                session = builder.run_stage(
                    Stage.APPLY_PATCHES,
                    lambda: self._patch(
                        stack, artifact, input_artifact, temp_dir, selection
                    ),
                )

                self._check_cancelled()
                builder.run_stage(
                    Stage.REBUILD_ARTIFACT,
                    lambda: self._rebuild(session, artifact, rebuilt, final),
                )

            if final is None:
                self._check_cancelled()
                builder.run_stage(
                    Stage.SIGN_ARTIFACT,
                    lambda: self._sign(rebuilt, output, signing),
                )
            logger.info("Saved to %s", output)
            self._progress(f"Saved to {output}")

            if device is not None:
                self._check_cancelled()
                package_name = builder.package_name
                builder.run_stage(
                    Stage.INSTALL,
                    lambda: self._install(output, device, package_name),
                )
        except PatchingCancelled:
            logger.info("Patching cancelled")
            purge = True
            raise
        finally:
            if merged is not None:
                _delete_quietly(merged)
            if purge:
                _purge(temp_dir)
            self._show_final(builder.build())

        return builder.build()

    # ── Stages ───────────────────────────────────────────────────────

    def _convert(self, container: Path, temp_dir: Path) -> Path:
        if self.merger is None:
            raise MergeError(
                f"{container.name} is a split bundle but no merger is "
                "configured (set apkeditor-jar)"
            )
        self._progress(f"Converting {container.name} to APK...")
        merged = temp_dir / f"{container.stem}-merged.apk"
        result = self.merger.merge(container, merged)
        logger.info("Conversion complete: %s", result)
        return result

    def _patch(
        self,
        stack: ExitStack,
        artifact: Path,
        source: Path,
        temp_dir: Path,
        selection: SelectionRequest,
    ) -> EngineSession:
        session = stack.enter_context(self.engine.open(artifact, temp_dir / "patcher"))
        self._builder.package_name = session.package_name
        self._builder.package_version = session.package_version
        self._show_header(session, source)
        patches = self._select(
            selection, session.package_name, session.package_version
        )
        self._check_cancelled()
        self._apply(session, patches)
        return session

    def _select(
        self, selection: SelectionRequest, package_name: str, package_version: str
    ) -> tuple[BoundPatch, ...]:
        self._progress(f"Filtering patches for {package_name} v{package_version}...")
        resolved = resolve(
            selection.patches,
            package_name,
            package_version,
            selection.selections,
            exclusive=selection.exclusive,
            force=selection.force,
        )
        logger.info("Setting patch options")
        return bind(resolved, selection.selections, selection.patches)

    def _apply(
        self, session: EngineSession, patches: Sequence[BoundPatch]
    ) -> None:
        self._progress(f"Applying {len(patches)} patches...")
        results: Iterator[PatchResult] = iter(session.execute(patches))
        try:
            while True:
                self._check_cancelled()
                try:
                    result = next(results)
                except StopIteration:
                    break
                self._record(result)
        finally:
            close = getattr(results, "close", None)
            if close is not None:
                close()

    def _record(self, result: PatchResult) -> None:
        self._builder.record_patch(
            PatchOutcome(result.patch, result.success, result.error)
        )
        if result.success:
            logger.info('"%s" succeeded', result.patch)
            self.console.print(f"[green]Applied: {escape(str(result.patch))}[/]")
            self._notify(f"Applied: {result.patch}")
        else:
            logger.error('"%s" failed:\n%s', result.patch, result.error)
            self.console.print(f"[red]FAILED: {escape(str(result.patch))}[/]")
            self._notify(f"FAILED: {result.patch}")

    def _rebuild(
        self,
        session: EngineSession,
        original: Path,
        target: Path,
        final: Optional[Path] = None,
    ) -> Path:
        self._progress("Rebuilding APK...")
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(original, target)
        session.rebuild(target)
        if final is None:
            return target
        final.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(target, final)
        return final

    def _sign(self, unsigned: Path, output: Path, config: SigningConfig) -> Path:
        self._progress("Signing APK...")
        return self.signer.sign(unsigned, output, config)

    def _install(self, artifact: Path, device: DeviceTarget, package_name: str) -> None:
        adb = self.adb or AdbClient()
        serial = device.serial or None
        if device.mount:
            self._progress("Mounting the patched APK file...")
            result = adb.mount_install(artifact, package_name, serial)
        else:
            result = adb.install(artifact, serial, on_progress=self._notify)
        if not result.success:
            logger.error("Installation failed: %s", result.message)
            raise InstallError(result)
        self._progress("Installed the patched APK file")

    # ── Helpers ──────────────────────────────────────────────────────

    def _check_cancelled(self) -> None:
        self.cancel_token.raise_if_cancelled()

    def _notify(self, message: str) -> None:
        if self.on_progress is not None:
            self.on_progress(message)

    def _progress(self, message: str) -> None:
        self.console.print(f"[dim]{escape(message)}[/]")
        self._notify(message)

    def _show_header(self, session: EngineSession, source: Path) -> None:
        self.console.print(
            Panel(
                f"[bold]Input:[/] {source}\n"
                f"[bold]Package:[/] {session.package_name}\n"
                f"[bold]Version:[/] {session.package_version}",
                title="Patching Session",
                border_style="blue",
            )
        )

    def _show_final(self, report: PatchingReport) -> None:
        lines = [
            f"Applied: {len(report.applied_patches)}",
            f"Failed: {len(report.failed_patches)}",
        ]
        for outcome in report.stages:
            mark = "[green]ok[/]" if outcome.success else "[red]failed[/]"
            lines.append(f"{outcome.stage.value}: {mark}")
        if report.success:
            self.console.print(
                Panel("\n".join(lines), title="Patching Complete",
                      border_style="green")
            )
        else:
            self.console.print(
                Panel("\n".join(lines), title="Patching Failed",
                      border_style="red")
            )


def _delete_quietly(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
        logger.info("Cleaned up %s", path)
    except OSError as e:
        logger.warning("Failed to delete %s: %s", path, e)


def _purge(temp_dir: Path) -> None:
    try:
        shutil.rmtree(temp_dir)
        logger.info("Purged temporary files directory")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to purge temporary files directory: %s", e)
