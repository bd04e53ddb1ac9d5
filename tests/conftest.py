"""Shared test fixtures for apk-patcher tests."""

from __future__ import annotations

import io
import json
import zipfile
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

import pytest
from rich.console import Console

from apk_patcher.core.engine import EngineSession, PatchEngine, PatchResult
from apk_patcher.core.models import (
    BoundPatch,
    CompatiblePackage,
    Patch,
    PatchOption,
)
from apk_patcher.data.store import DataStore


@pytest.fixture
def sample_patches() -> list[Patch]:
    """Bundle of five patches covering the common compatibility shapes."""
    return [
        Patch(
            index=0,
            name="Hide ads",
            compatible_packages=(
                CompatiblePackage("com.example.app", ("1.0", "1.1")),
            ),
        ),
        Patch(
            index=1,
            name="Custom branding",
            compatible_packages=(CompatiblePackage("com.example.app"),),
            options=(
                PatchOption("appName", default="Example"),
                PatchOption("iconPath"),
            ),
            use=False,
        ),
        Patch(index=2, name="Spoof signature"),
        Patch(
            index=3,
            name="Other app fix",
            compatible_packages=(CompatiblePackage("com.other.app", ("2.0",)),),
        ),
        Patch(index=4, name=None),
    ]


class FakeSession(EngineSession):
    """Engine session that succeeds for every patch except ``failing``."""

    def __init__(self, package_name: str, package_version: str,
                 failing: Sequence[str] = (), rebuild_error: Optional[Exception] = None):
        self._package_name = package_name
        self._package_version = package_version
        self.failing = set(failing)
        self.rebuild_error = rebuild_error
        self.executed: list[BoundPatch] = []
        self.rebuilt: Optional[Path] = None
        self.closed = False

    @property
    def package_name(self) -> str:
        return self._package_name

    @property
    def package_version(self) -> str:
        return self._package_version

    def execute(self, patches: Sequence[BoundPatch]) -> Iterator[PatchResult]:
        for patch in patches:
            self.executed.append(patch)
            if patch.identity in self.failing:
                yield PatchResult.failed(patch, RuntimeError(f"{patch} broke"))
            else:
                yield PatchResult(patch)

    def rebuild(self, target: Path) -> None:
        if self.rebuild_error is not None:
            raise self.rebuild_error
        with open(target, "ab") as f:
            f.write(b"-patched")
        self.rebuilt = target

    def close(self) -> None:
        self.closed = True


class FakeEngine(PatchEngine):
    def __init__(self, session: FakeSession):
        self.session = session
        self.opened: Optional[Path] = None

    def open(self, artifact: Path, temp_dir: Path) -> EngineSession:
        self.opened = artifact
        return self.session


@pytest.fixture
def fake_session() -> FakeSession:
    return FakeSession("com.example.app", "1.0")


@pytest.fixture
def fake_engine(fake_session) -> FakeEngine:
    return FakeEngine(fake_session)


@pytest.fixture
def quiet_console() -> Console:
    """Console writing to a buffer instead of the terminal."""
    return Console(file=io.StringIO(), width=120)


@pytest.fixture
def artifact(tmp_path) -> Path:
    path = tmp_path / "app.apk"
    path.write_bytes(b"apk")
    return path


def write_bundle(path: Path, definitions: list[dict[str, Any]]) -> Path:
    """Write a bundle archive holding ``definitions`` as patches.json."""
    with zipfile.ZipFile(path, "w") as archive:
        archive.writestr("patches.json", json.dumps(definitions))
    return path


@pytest.fixture
def bundle_file(tmp_path) -> Path:
    return write_bundle(tmp_path / "patches.mpp", [
        {
            "name": "Hide ads",
            "description": "Removes ads.",
            "compatiblePackages": [
                {"name": "com.example.app", "versions": ["1.0", "1.1"]},
            ],
        },
        {
            "name": "Custom branding",
            "use": False,
            "compatiblePackages": [{"name": "com.example.app", "versions": None}],
            "options": [
                {"key": "appName", "title": "App name", "type": "string",
                 "default": "Example"},
            ],
        },
        {"name": "Spoof signature", "compatiblePackages": None},
    ])


@pytest.fixture
def temp_db(tmp_path):
    """DataStore with a temporary SQLite database."""
    db_path = str(tmp_path / "test.db")
    store = DataStore(db_path=db_path)
    yield store
    store.close()
