"""Split-bundle conversion: merge .apkm/.apks/.xapk into a single APK."""

from __future__ import annotations

import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

CONTAINER_EXTENSIONS = frozenset({".apkm", ".apks", ".xapk"})


class MergeError(RuntimeError):
    pass


def is_container(path: Path) -> bool:
    return path.suffix.lower() in CONTAINER_EXTENSIONS


class ContainerMerger(ABC):
    @abstractmethod
    def merge(self, container: Path, output: Path) -> Path: ...


class ApkEditorMerger(ContainerMerger):
    """Runs APKEditor's merge command through ``java -jar``."""

    def __init__(self, jar_path: str | Path, java: str = "java",
                 timeout: Optional[int] = None):
        self.jar_path = Path(jar_path)
        self.java = java
        self.timeout = timeout

    def merge(self, container: Path, output: Path) -> Path:
        if not self.jar_path.is_file():
            raise MergeError(f"APKEditor jar not found: {self.jar_path}")
        output.parent.mkdir(parents=True, exist_ok=True)
        cmd = [
            self.java, "-jar", str(self.jar_path), "m",
            "-i", str(container), "-o", str(output), "-clean-meta", "-f",
        ]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd, capture_output=True, text=True, timeout=self.timeout,
            )
        except FileNotFoundError:
            raise MergeError(f"{self.java} not found; a Java runtime is required")
        except subprocess.TimeoutExpired:
            raise MergeError(f"Merging timed out after {self.timeout} seconds")
        if result.returncode != 0 or not output.is_file():
            message = (result.stderr or result.stdout).strip()
            raise MergeError(f"Failed to merge {container.name}: {message}")
        return output
