"""CLI entry point for apk-patcher."""

from __future__ import annotations

import os
import sqlite3
import time
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

import apk_patcher

app = typer.Typer(
    name="apk-patcher",
    help="Patch Android APKs with patch bundles and install them over ADB.",
    no_args_is_help=True,
)
console = Console()

_CONFIG_KEYS = {
    "engine",
    "adb-path",
    "apkeditor-jar",
    "signer",
    "keystore-entry-alias",
    "purge",
}
_BOOLEAN_KEYS = {"purge"}
_BOOLEAN_VALUES = ("on", "off", "true", "false")


def _resolve_setting(key: str, flag: Optional[str] = None,
                     default: Optional[str] = None) -> Optional[str]:
    """Resolve a setting from CLI flag → env var → config → default."""
    if flag:
        return flag
    env_value = os.environ.get("APK_PATCHER_" + key.upper().replace("-", "_"))
    if env_value:
        return env_value
    try:
        from apk_patcher.data.store import DataStore

        store = DataStore()
        cfg_value = store.get_config(key)
        store.close()
        if cfg_value:
            return cfg_value
    except (OSError, sqlite3.Error):
        pass
    return default


def _is_true(value: Optional[str]) -> bool:
    return (value or "").lower() in ("on", "true")


def _fail(message: str) -> None:
    console.print(f"[red]Error: {escape(message)}[/]")
    raise typer.Exit(1)


@app.command()
def patch(
    apk: Path = typer.Argument(
        ..., help="APK file to patch (.apk, or .apkm/.apks/.xapk bundle)."
    ),
    patches: list[Path] = typer.Option(
        ..., "--patches", "-p", help="Patch bundle; repeat for several."
    ),
    enable: Optional[list[str]] = typer.Option(
        None, "--enable", "-e", help="Enable a patch by name."
    ),
    enable_index: Optional[list[int]] = typer.Option(
        None, "--enable-index", "--ei",
        help="Enable a patch by its index in the combined bundle list.",
    ),
    disable: Optional[list[str]] = typer.Option(
        None, "--disable", "-d", help="Disable a patch by name."
    ),
    disable_index: Optional[list[int]] = typer.Option(
        None, "--disable-index", "--di",
        help="Disable a patch by its index in the combined bundle list.",
    ),
    options: Optional[list[str]] = typer.Option(
        None, "--option", "-O",
        help="Option for an enabled patch: PATCH:key=value (PATCH:key for null).",
    ),
    exclusive: bool = typer.Option(
        False, "--exclusive", help="Disable all patches except the ones enabled."
    ),
    force: bool = typer.Option(
        False, "--force", "-f",
        help="Don't check compatibility with the APK's version.",
    ),
    out: Optional[Path] = typer.Option(
        None, "--out", "-o", help="Where to save the patched APK."
    ),
    result_file: Optional[Path] = typer.Option(
        None, "--result-file", "-r", help="Where to save the patching report."
    ),
    install: bool = typer.Option(
        False, "--install", "-i", help="Install the patched APK over ADB."
    ),
    device: Optional[str] = typer.Option(
        None, "--device", "-s",
        help="Serial of the device to install to. Empty picks the only one.",
    ),
    mount: bool = typer.Option(
        False, "--mount", help="Install by mounting over the installed app (root)."
    ),
    unsigned: bool = typer.Option(
        False, "--unsigned", help="Disable signing of the final APK."
    ),
    keystore: Optional[Path] = typer.Option(
        None, "--keystore", help="Keystore to sign with; created if missing."
    ),
    keystore_password: Optional[str] = typer.Option(
        None, "--keystore-password", help="Password of the keystore."
    ),
    keystore_entry_alias: Optional[str] = typer.Option(
        None, "--keystore-entry-alias", help="Alias of the key entry."
    ),
    keystore_entry_password: Optional[str] = typer.Option(
        None, "--keystore-entry-password", help="Password of the key entry."
    ),
    signer: Optional[str] = typer.Option(
        None, "--signer", help="Signer name used for a new keystore."
    ),
    temporary_files_path: Optional[Path] = typer.Option(
        None, "--temporary-files-path", "-t", help="Where to keep temporary files."
    ),
    purge: Optional[bool] = typer.Option(
        None, "--purge/--no-purge", help="Delete temporary files afterwards."
    ),
    engine: Optional[str] = typer.Option(
        None, "--engine", help="Patch engine as package.module:attribute."
    ),
    expected_sha256: Optional[str] = typer.Option(
        None, "--expected-sha256", help="Abort unless the input has this SHA-256."
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose logging."),
) -> None:
    """Patch an APK file."""
    from apk_patcher.core.bundle import BundleError, load_bundles
    from apk_patcher.core.checksum import verify_checksum
    from apk_patcher.core.engine import EngineLoadError, load_engine
    from apk_patcher.core.merge import ApkEditorMerger
    from apk_patcher.core.models import DeviceTarget, SelectionRequest
    from apk_patcher.core.options import build_selections
    from apk_patcher.core.pipeline import PipelineRunner
    from apk_patcher.core.resolver import PatchSelectionError, validate_selections
    from apk_patcher.core.signing import SigningConfig
    from apk_patcher.data.store import DataStore
    from apk_patcher.devices.adb import AdbClient, AdbError, select_target
    from apk_patcher.logging_setup import setup_logging

    setup_logging(verbose)

    if not apk.is_file():
        _fail(f"APK file {apk} does not exist")

    # Configuration errors fail before anything is patched.
    try:
        selections = build_selections(
            enable or [], enable_index or [], disable or [],
            disable_index or [], options or [],
        )
        console.print("[dim]Loading patches...[/]")
        bundle = load_bundles(patches)
        validate_selections(bundle, selections)
    except (PatchSelectionError, BundleError) as e:
        _fail(str(e))

    if expected_sha256:
        status = verify_checksum(apk, expected_sha256)
        if not status.verified:
            _fail(status.describe())
        console.print(f"[green]{status.describe()}[/]")

    engine_spec = _resolve_setting("engine", engine)
    if not engine_spec:
        _fail(
            "No patch engine configured. Pass --engine or run: "
            "apk-patcher config set engine <package.module:attribute>"
        )
    try:
        patch_engine = load_engine(engine_spec)
    except EngineLoadError as e:
        _fail(str(e))

    adb = AdbClient(_resolve_setting("adb-path"))
    target: Optional[DeviceTarget] = None
    if install or device is not None:
        target = DeviceTarget(serial=device or None, mount=mount)
        try:
            found = select_target(adb.list_devices(), target.serial)
        except AdbError as e:
            _fail(str(e))
        if not found.success:
            _fail(found.message)
        console.print(f"[green]Installing to: {found.device.display_name_with_status}[/]")

    output = (out or Path.cwd() / f"{apk.stem}-patched.apk").absolute()
    signing = None
    if not unsigned and not mount:
        signing = SigningConfig(
            keystore=(keystore or output.parent / f"{output.stem}.keystore").absolute(),
            keystore_password=keystore_password,
            key_alias=_resolve_setting(
                "keystore-entry-alias", keystore_entry_alias, "apk-patcher key"
            ),
            key_password=keystore_entry_password,
            signer=_resolve_setting("signer", signer, "apk-patcher"),
        )

    jar = _resolve_setting("apkeditor-jar")
    runner = PipelineRunner(
        patch_engine,
        merger=ApkEditorMerger(jar) if jar else None,
        adb=adb,
        console=console,
    )
    request = SelectionRequest(
        patches=bundle, selections=selections, exclusive=exclusive, force=force,
    )

    error: Optional[Exception] = None
    try:
        runner.run(
            apk,
            request,
            output,
            signing=signing,
            device=target,
            temp_dir=temporary_files_path,
            purge=purge if purge is not None else _is_true(_resolve_setting("purge")),
        )
    except Exception as e:
        error = e
        console.print(f"[red]Patching failed: {escape(str(e))}[/]")
    finally:
        report = runner.report
        if result_file:
            from apk_patcher.core.report import write_report

            write_report(report, result_file)
            console.print(f"[dim]Patching result saved to {result_file}[/]")
        try:
            store = DataStore()
            store.record_run(report, str(apk), str(output))
            store.close()
        except (OSError, sqlite3.Error) as e:
            console.print(f"[yellow]Could not record run history: {e}[/]")

    raise typer.Exit(0 if error is None and report.success else 1)


@app.command("list-patches")
def list_patches(
    patches: list[Path] = typer.Option(
        ..., "--patches", "-p", help="Patch bundle; repeat for several."
    ),
    package: Optional[str] = typer.Option(
        None, "--package", help="Only patches usable with this package."
    ),
    with_options: bool = typer.Option(
        False, "--with-options", help="Show declared options."
    ),
) -> None:
    """List patches in one or more bundles."""
    from apk_patcher.core.bundle import BundleError, filter_for_package, load_bundles

    try:
        bundle = load_bundles(patches)
    except BundleError as e:
        _fail(str(e))
    if package:
        bundle = filter_for_package(bundle, package)

    if not bundle:
        console.print("[yellow]No patches found.[/]")
        raise typer.Exit(0)

    table = Table(title="Patches")
    table.add_column("Index", style="cyan", justify="right")
    table.add_column("Name", style="green")
    table.add_column("Enabled")
    table.add_column("Compatible packages")
    if with_options:
        table.add_column("Options")

    for p in bundle:
        if p.is_universal:
            packages = "any"
        else:
            packages = "\n".join(
                c.name + (
                    "" if c.versions is None
                    else f" ({', '.join(c.versions) or 'no versions'})"
                )
                for c in p.compatible_packages
            )
        row = [str(p.index), p.name or "(unnamed)", "yes" if p.use else "no", packages]
        if with_options:
            row.append("\n".join(
                f"{o.key} ({o.type.value}{', required' if o.required else ''})"
                f" = {o.default!r}"
                for o in p.options
            ))
        table.add_row(*row)

    console.print(table)


@app.command("list-versions")
def list_versions(
    patches: list[Path] = typer.Option(
        ..., "--patches", "-p", help="Patch bundle; repeat for several."
    ),
    package: Optional[list[str]] = typer.Option(
        None, "--package", help="Limit to these packages."
    ),
) -> None:
    """List the versions patches are compatible with, most supported first."""
    from apk_patcher.core.bundle import BundleError, compatible_versions, load_bundles

    try:
        bundle = load_bundles(patches)
    except BundleError as e:
        _fail(str(e))

    versions = compatible_versions(bundle, package)
    if not versions:
        console.print("[yellow]No compatible packages found.[/]")
        raise typer.Exit(0)

    for name, counts in versions.items():
        table = Table(title=name)
        table.add_column("Version", style="cyan")
        table.add_column("Patches", justify="right")
        if not counts:
            table.add_row("any", "")
        for version, count in counts:
            table.add_row(version, str(count))
        console.print(table)


def _device_table(devices) -> Table:
    table = Table(title="Devices")
    table.add_column("Serial", style="cyan")
    table.add_column("Status")
    table.add_column("Model", style="green")
    table.add_column("Architecture")
    for d in devices:
        table.add_row(d.id, d.status.name.lower(), d.model or "", d.architecture or "")
    return table


@app.command()
def devices(
    watch: bool = typer.Option(
        False, "--watch", "-w", help="Keep polling and print changes."
    ),
    interval: float = typer.Option(5.0, "--interval", help="Polling interval."),
) -> None:
    """List connected devices."""
    from apk_patcher.devices.adb import AdbClient, AdbError
    from apk_patcher.devices.monitor import DeviceMonitor

    client = AdbClient(_resolve_setting("adb-path"))

    if not watch:
        try:
            found = client.list_devices()
        except AdbError as e:
            _fail(str(e))
        if not found:
            console.print("[yellow]No devices connected.[/]")
            raise typer.Exit(0)
        console.print(_device_table(found))
        return

    monitor = DeviceMonitor(client, interval=interval)

    def show(state) -> None:
        if state.bridge_available is False:
            console.print("[red]ADB not found. Install Android SDK Platform Tools.[/]")
            return
        console.print(_device_table(state.devices))
        if state.selected:
            console.print(f"[green]Selected: {state.selected.display_name_with_status}[/]")

    monitor.subscribe(show)
    monitor.start()
    try:
        while monitor.is_running:
            time.sleep(0.5)
    except KeyboardInterrupt:
        pass
    finally:
        monitor.stop()
    if monitor.state.bridge_available is False:
        raise typer.Exit(1)


@app.command("install")
def install_apk(
    apk: Path = typer.Argument(..., help="APK file to install."),
    device: Optional[str] = typer.Option(
        None, "--device", "-s", help="Device serial; omit to use the only device."
    ),
    mount: bool = typer.Option(
        False, "--mount", help="Mount over the installed app instead (root)."
    ),
    package: Optional[str] = typer.Option(
        None, "--package", help="Package name, required with --mount."
    ),
    allow_downgrade: bool = typer.Option(
        True, "--allow-downgrade/--no-allow-downgrade",
        help="Pass -d to adb install.",
    ),
) -> None:
    """Install an APK on a connected device."""
    from apk_patcher.devices.adb import AdbClient, InstallStatus

    client = AdbClient(_resolve_setting("adb-path"))
    if mount:
        if not package:
            _fail("--package is required with --mount")
        result = client.mount_install(apk, package, device)
    else:
        result = client.install(
            apk, device, allow_downgrade=allow_downgrade,
            on_progress=lambda line: console.print(f"[dim]{escape(line)}[/]"),
        )

    if result.success:
        console.print(f"[green]Installed on {result.device.display_name}[/]")
        return
    console.print(f"[red]{escape(result.message)}[/]")
    if result.status is InstallStatus.MULTIPLE_DEVICES:
        for candidate in result.candidates:
            console.print(f"  - {candidate.id} ({candidate.display_name})")
        console.print("\nSpecify one with: [bold]apk-patcher install --device <serial>[/]")
    raise typer.Exit(1)


@app.command()
def checksum(
    file: Path = typer.Argument(..., help="File to hash."),
    expected: Optional[str] = typer.Option(
        None, "--expected", help="Expected SHA-256 to verify against."
    ),
) -> None:
    """Print or verify the SHA-256 checksum of a file."""
    from apk_patcher.core.checksum import ChecksumKind, sha256sum, verify_checksum

    if not expected:
        try:
            console.print(f"{sha256sum(file)}  {file}")
        except OSError as e:
            _fail(str(e))
        return

    status = verify_checksum(file, expected)
    if status.verified:
        console.print(f"[green]{status.describe()}[/]")
        return
    style = "yellow" if status.kind is ChecksumKind.NOT_CONFIGURED else "red"
    console.print(f"[{style}]{status.describe()}[/]")
    raise typer.Exit(1)


@app.command()
def config(
    action: str = typer.Argument(
        "get", help="Action: get, set or unset"
    ),
    key: Optional[str] = typer.Argument(
        None, help=f"Config key ({', '.join(sorted(_CONFIG_KEYS))})"
    ),
    value: Optional[str] = typer.Argument(
        None, help="Value to set"
    ),
) -> None:
    """View or modify configuration."""
    from apk_patcher.data.store import DataStore

    store = DataStore()

    if action == "get":
        if key:
            val = store.get_config(key)
            if val is not None:
                console.print(f"{key} = {val}")
            else:
                console.print(f"[yellow]{key} is not set[/]")
        else:
            for k in sorted(_CONFIG_KEYS):
                val = store.get_config(k)
                console.print(f"{k} = {val or '(not set)'}")
    elif action == "set":
        if not key or value is None:
            console.print("[red]Usage: apk-patcher config set <key> <value>[/]")
            raise typer.Exit(1)
        if key not in _CONFIG_KEYS:
            console.print(
                f"[red]Unknown config key: {key}. "
                f"Valid keys: {', '.join(sorted(_CONFIG_KEYS))}[/]"
            )
            raise typer.Exit(1)
        if key in _BOOLEAN_KEYS and value not in _BOOLEAN_VALUES:
            console.print(f"[red]{key} value must be on/off or true/false[/]")
            raise typer.Exit(1)
        store.set_config(key, value)
        console.print(f"[green]Set {key} = {value}[/]")
    elif action == "unset":
        if not key:
            console.print("[red]Usage: apk-patcher config unset <key>[/]")
            raise typer.Exit(1)
        store.unset_config(key)
        console.print(f"[green]Unset {key}[/]")
    else:
        console.print("[red]Unknown action. Use 'get', 'set' or 'unset'.[/]")
        raise typer.Exit(1)

    store.close()


@app.command()
def history(
    limit: int = typer.Option(20, "--limit", "-n", help="Number of runs to show."),
) -> None:
    """Show recent patching runs."""
    from apk_patcher.data.store import DataStore

    store = DataStore()
    runs = store.get_runs(limit)
    store.close()

    if not runs:
        console.print("[yellow]No runs recorded yet.[/]")
        return

    table = Table(title="Patching History")
    table.add_column("When", style="dim")
    table.add_column("Package", style="cyan")
    table.add_column("Version")
    table.add_column("Result")
    table.add_column("Applied", justify="right")
    table.add_column("Failed", justify="right")
    for run in runs:
        table.add_row(
            run["created_at"][:19].replace("T", " "),
            run["package_name"] or run["input_path"],
            run["package_version"] or "",
            "[green]success[/]" if run["success"] else "[red]failed[/]",
            str(run["applied_count"]),
            str(run["failed_count"]),
        )
    console.print(table)


@app.command()
def version() -> None:
    """Print version."""
    console.print(f"apk-patcher {apk_patcher.__version__}")


if __name__ == "__main__":
    app()
