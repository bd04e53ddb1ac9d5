"""SHA-256 checksums for input artifacts."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

_CHUNK_SIZE = 8192


class ChecksumKind(Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NOT_CONFIGURED = "not_configured"
    ERROR = "error"


@dataclass(frozen=True)
class ChecksumStatus:
    kind: ChecksumKind
    expected: Optional[str] = None
    actual: Optional[str] = None
    message: Optional[str] = None

    @property
    def verified(self) -> bool:
        return self.kind is ChecksumKind.VERIFIED

    def describe(self) -> str:
        if self.kind is ChecksumKind.VERIFIED:
            return f"Checksum verified ({self.actual})"
        if self.kind is ChecksumKind.MISMATCH:
            return (
                f"Checksum mismatch: expected {self.expected}, "
                f"got {self.actual}"
            )
        if self.kind is ChecksumKind.NOT_CONFIGURED:
            return "No checksum configured"
        return f"Checksum calculation failed: {self.message}"


def sha256sum(path: str | Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


def verify_checksum(path: str | Path, expected: Optional[str]) -> ChecksumStatus:
    """Compare the file's SHA-256 against ``expected`` (case-insensitive)."""
    if not expected:
        return ChecksumStatus(ChecksumKind.NOT_CONFIGURED)
    expected = expected.strip().lower()
    try:
        actual = sha256sum(path)
    except OSError as e:
        return ChecksumStatus(ChecksumKind.ERROR, expected=expected, message=str(e))
    if actual == expected:
        return ChecksumStatus(ChecksumKind.VERIFIED, expected=expected, actual=actual)
    return ChecksumStatus(ChecksumKind.MISMATCH, expected=expected, actual=actual)
