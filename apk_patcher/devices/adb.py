"""ADB client: device discovery and APK installation via the adb binary."""

from __future__ import annotations

import logging
import os
import platform
import re
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from apk_patcher.core.models import Device, DeviceStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]

MODEL_PROP = "ro.product.model"
ABI_PROP = "ro.product.cpu.abi"
REMOTE_TMP = "/data/local/tmp"

# Checked in order; the first code found in the output wins.
INSTALL_ERRORS: list[tuple[str, str]] = [
    ("INSTALL_FAILED_VERSION_DOWNGRADE",
     "Cannot downgrade - a newer version is installed. "
     "Uninstall the existing app first."),
    ("INSTALL_FAILED_ALREADY_EXISTS",
     "App already exists. Try uninstalling it first."),
    ("INSTALL_FAILED_INSUFFICIENT_STORAGE",
     "Not enough storage space on device."),
    ("INSTALL_FAILED_INVALID_APK", "Invalid APK file."),
    ("INSTALL_PARSE_FAILED_NO_CERTIFICATES", "APK is not signed properly."),
    ("INSTALL_FAILED_UPDATE_INCOMPATIBLE",
     "Incompatible update - signatures don't match. "
     "Uninstall the existing app first."),
    ("INSTALL_FAILED_USER_RESTRICTED",
     "Installation restricted by user settings."),
    ("INSTALL_FAILED_VERIFICATION_FAILURE", "Package verification failed."),
]

_FAILURE_RE = re.compile(r"Failure \[(.+)]")


class AdbError(RuntimeError):
    pass


class AdbNotFoundError(AdbError):
    def __init__(self) -> None:
        super().__init__(
            "ADB not found. Please install Android SDK Platform Tools."
        )


class InstallStatus(Enum):
    SUCCESS = "success"
    BRIDGE_NOT_FOUND = "bridge_not_found"
    NO_DEVICE = "no_device"
    UNAUTHORIZED = "unauthorized"
    MULTIPLE_DEVICES = "multiple_devices"
    DEVICE_NOT_FOUND = "device_not_found"
    REJECTED = "rejected"
    ERROR = "error"


@dataclass(frozen=True)
class InstallResult:
    status: InstallStatus
    message: str = ""
    device: Optional[Device] = None
    candidates: tuple[Device, ...] = ()

    @property
    def success(self) -> bool:
        return self.status is InstallStatus.SUCCESS


def parse_install_error(output: str) -> str:
    """Translate adb install output into a human-readable cause."""
    for code, message in INSTALL_ERRORS:
        if code in output:
            return message
    if "Failure" in output:
        match = _FAILURE_RE.search(output)
        if match:
            return match.group(1)
    return f"Installation failed: {output.strip()}"


def parse_device_list(
    output: str,
    query_prop: Optional[Callable[[str, str], Optional[str]]] = None,
) -> list[Device]:
    """Parse ``adb devices -l`` output.

    Example line::

        XXXXXXXX device usb:1-1 product:flame model:Pixel_4 device:flame

    ``query_prop(device_id, prop)`` is only called for ready devices.
    """
    devices = []
    for line in output.splitlines():
        line = line.strip()
        if not line or line.startswith("List of devices") or line.startswith("*"):
            continue
        parts = line.split()
        if len(parts) < 2:
            continue

        device_id = parts[0]
        status = DeviceStatus.parse(parts[1])
        model: Optional[str] = None
        product: Optional[str] = None
        for part in parts[2:]:
            if part.startswith("model:"):
                model = part[len("model:"):].replace("_", " ")
            elif part.startswith("product:"):
                product = part[len("product:"):]

        name = model or product
        architecture = None
        if status is DeviceStatus.READY and query_prop is not None:
            if name is None:
                name = query_prop(device_id, MODEL_PROP)
            architecture = query_prop(device_id, ABI_PROP)

        devices.append(Device(device_id, status, name, architecture))
    return devices


def select_target(
    devices: Sequence[Device], device_id: Optional[str] = None
) -> InstallResult:
    """Pick the install target, or explain why none can be picked.

    Returns a SUCCESS result carrying the device when one is found.
    """
    ready = tuple(d for d in devices if d.is_ready)
    if device_id:
        for device in ready:
            if device.id == device_id:
                return InstallResult(InstallStatus.SUCCESS, device=device)
        known = next((d for d in devices if d.id == device_id), None)
        if known is not None and known.status is DeviceStatus.UNAUTHORIZED:
            return InstallResult(
                InstallStatus.UNAUTHORIZED,
                f"Device {device_id} is not authorized. Please accept the "
                "USB debugging prompt on your device.",
            )
        return InstallResult(
            InstallStatus.DEVICE_NOT_FOUND, f"Device {device_id} not found"
        )

    if not ready:
        if any(d.status is DeviceStatus.UNAUTHORIZED for d in devices):
            return InstallResult(
                InstallStatus.UNAUTHORIZED,
                "Device connected but not authorized. Please accept the "
                "USB debugging prompt on your device.",
            )
        return InstallResult(
            InstallStatus.NO_DEVICE,
            "No devices connected. Please connect your Android device "
            "with USB debugging enabled.",
        )
    if len(ready) > 1:
        names = ", ".join(d.id for d in ready)
        return InstallResult(
            InstallStatus.MULTIPLE_DEVICES,
            f"Multiple devices connected ({names}). Please select one.",
            candidates=ready,
        )
    return InstallResult(InstallStatus.SUCCESS, device=ready[0])


def _candidate_paths() -> list[Path]:
    system = platform.system().lower()
    home = Path.home()
    if system == "windows":
        local = os.environ.get("LOCALAPPDATA", "")
        profile = os.environ.get("USERPROFILE", "")
        return [
            Path(local) / "Android" / "Sdk" / "platform-tools" / "adb.exe",
            Path(profile) / "AppData" / "Local" / "Android" / "Sdk"
            / "platform-tools" / "adb.exe",
            Path("C:/Android/sdk/platform-tools/adb.exe"),
            Path("C:/Program Files/Android/platform-tools/adb.exe"),
        ]
    if system == "darwin":
        return [
            home / "Library" / "Android" / "sdk" / "platform-tools" / "adb",
            Path("/opt/homebrew/bin/adb"),
            Path("/usr/local/bin/adb"),
        ]
    return [
        home / "Android" / "Sdk" / "platform-tools" / "adb",
        home / "android-sdk" / "platform-tools" / "adb",
        Path("/opt/android-sdk/platform-tools/adb"),
        Path("/usr/bin/adb"),
        Path("/usr/local/bin/adb"),
    ]


class AdbClient:
    """Thin wrapper around the adb command line."""

    def __init__(self, adb_path: Optional[str] = None):
        self._adb_path = adb_path

    def find_adb(self) -> Optional[str]:
        """Locate adb in SDK locations or PATH. The result is cached."""
        if self._adb_path and Path(self._adb_path).exists():
            return self._adb_path

        for candidate in _candidate_paths():
            if candidate.is_file() and os.access(candidate, os.X_OK):
                logger.info("Found ADB at: %s", candidate)
                self._adb_path = str(candidate)
                return self._adb_path

        found = shutil.which("adb")
        if found:
            logger.info("Found ADB in PATH: %s", found)
            self._adb_path = found
            return found

        logger.warning("ADB not found")
        return None

    def is_available(self) -> bool:
        return self.find_adb() is not None

    def _require_adb(self) -> str:
        adb = self.find_adb()
        if adb is None:
            raise AdbNotFoundError()
        return adb

    def list_devices(self) -> list[Device]:
        adb = self._require_adb()
        try:
            result = subprocess.run(
                [adb, "devices", "-l"], capture_output=True, text=True,
            )
        except OSError as e:
            raise AdbError(f"Failed to get devices: {e}")
        if result.returncode != 0:
            raise AdbError(
                f"Failed to get device list: {result.stdout}{result.stderr}"
            )
        devices = parse_device_list(result.stdout, self.get_prop)
        logger.info("Found %d device(s)", len(devices))
        return devices

    def get_prop(self, device_id: str, prop: str) -> Optional[str]:
        """Read a system property; None when unavailable."""
        adb = self._require_adb()
        try:
            result = subprocess.run(
                [adb, "-s", device_id, "shell", "getprop", prop],
                capture_output=True, text=True,
            )
        except OSError:
            logger.debug("getprop %s failed on %s", prop, device_id, exc_info=True)
            return None
        value = result.stdout.strip()
        return value if result.returncode == 0 and value else None

    def _resolve_target(
        self, artifact: Path, device_id: Optional[str]
    ) -> InstallResult:
        if self.find_adb() is None:
            return InstallResult(
                InstallStatus.BRIDGE_NOT_FOUND, str(AdbNotFoundError())
            )
        if not artifact.is_file():
            return InstallResult(
                InstallStatus.ERROR, f"APK file not found: {artifact}"
            )
        try:
            devices = self.list_devices()
        except AdbError as e:
            return InstallResult(InstallStatus.ERROR, str(e))
        target = select_target(devices, device_id)
        if target.success and target.device is None:
            return InstallResult(
                InstallStatus.NO_DEVICE, "No install target was selected"
            )
        return target

    def install(
        self,
        artifact: str | Path,
        device_id: Optional[str] = None,
        allow_downgrade: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> InstallResult:
        """Install ``artifact`` with ``adb install -r [-d]``."""
        artifact = Path(artifact)
        target = self._resolve_target(artifact, device_id)
        device = target.device
        if not target.success or device is None:
            return target

        cmd = [self._require_adb(), "-s", device.id, "install", "-r"]
        if allow_downgrade:
            cmd.append("-d")
        cmd.append(str(artifact))

        if on_progress:
            on_progress(f"Installing on {device.display_name}...")
        logger.info("Running: %s", " ".join(cmd))

        try:
            exit_code, output = self._stream(cmd, on_progress)
        except OSError as e:
            logger.error("Error installing APK", exc_info=True)
            return InstallResult(
                InstallStatus.ERROR, f"Installation failed: {e}", device=device
            )

        if exit_code == 0 and "Success" in output:
            logger.info("APK installed successfully")
            return InstallResult(InstallStatus.SUCCESS, device=device)

        message = parse_install_error(output)
        logger.error("Installation failed: %s", message)
        return InstallResult(InstallStatus.REJECTED, message, device=device)

    def mount_install(
        self,
        artifact: str | Path,
        package_name: str,
        device_id: Optional[str] = None,
    ) -> InstallResult:
        """Bind-mount ``artifact`` over the installed app's base APK (root)."""
        artifact = Path(artifact)
        target = self._resolve_target(artifact, device_id)
        device = target.device
        if not target.success or device is None:
            return target
        adb = self._require_adb()
        remote = f"{REMOTE_TMP}/{package_name}.apk"

        try:
            push = subprocess.run(
                [adb, "-s", device.id, "push", str(artifact), remote],
                capture_output=True, text=True,
            )
            if push.returncode != 0:
                return InstallResult(
                    InstallStatus.ERROR,
                    f"Failed to push APK: {push.stderr.strip() or push.stdout.strip()}",
                    device=device,
                )

            path = subprocess.run(
                [adb, "-s", device.id, "shell", "pm", "path", package_name],
                capture_output=True, text=True,
            )
            base = next(
                (
                    line.split(":", 1)[1].strip()
                    for line in path.stdout.splitlines()
                    if line.startswith("package:") and line.strip().endswith("base.apk")
                ),
                None,
            )
            if path.returncode != 0 or base is None:
                return InstallResult(
                    InstallStatus.REJECTED,
                    f"{package_name} is not installed on {device.display_name}; "
                    "mounting requires the original app to be installed.",
                    device=device,
                )

            mount = subprocess.run(
                [adb, "-s", device.id, "shell", "su", "-c",
                 f"mount -o bind {remote} {base}"],
                capture_output=True, text=True,
            )
        except OSError as e:
            return InstallResult(
                InstallStatus.ERROR, f"Mounting failed: {e}", device=device
            )

        if mount.returncode != 0:
            message = (mount.stderr or mount.stdout).strip()
            logger.error("Failed to mount the patched APK file: %s", message)
            return InstallResult(
                InstallStatus.REJECTED,
                f"Failed to mount the patched APK file: {message}",
                device=device,
            )
        logger.info("Mounted %s over %s", remote, base)
        return InstallResult(InstallStatus.SUCCESS, device=device)

    @staticmethod
    def _stream(
        cmd: list[str], on_progress: Optional[ProgressCallback]
    ) -> tuple[int, str]:
        lines = []
        with subprocess.Popen(
            cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
        ) as process:
            assert process.stdout is not None
            for line in process.stdout:
                line = line.rstrip("\n")
                lines.append(line)
                logger.debug("ADB: %s", line)
                if on_progress:
                    on_progress(line)
            exit_code = process.wait()
        return exit_code, "\n".join(lines)
