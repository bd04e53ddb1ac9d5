"""APK signing: keystore generation with keytool, signing with apksigner."""

from __future__ import annotations

import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SIGNER = "apk-patcher"
DEFAULT_KEY_ALIAS = "apk-patcher key"
# keytool refuses passwords shorter than six characters.
DEFAULT_KEYSTORE_PASSWORD = "apk-patcher"


class SigningError(RuntimeError):
    pass


@dataclass(frozen=True)
class SigningConfig:
    keystore: Path
    keystore_password: Optional[str] = None
    key_alias: str = DEFAULT_KEY_ALIAS
    key_password: Optional[str] = None
    signer: str = DEFAULT_SIGNER

    @property
    def store_password(self) -> str:
        return self.keystore_password or DEFAULT_KEYSTORE_PASSWORD

    @property
    def entry_password(self) -> str:
        return self.key_password or self.store_password


class Signer(ABC):
    @abstractmethod
    def sign(self, unsigned: Path, output: Path, config: SigningConfig) -> Path: ...


class KeytoolSigner(Signer):
    """Signs with the Android build-tools ``apksigner`` binary."""

    def __init__(self, keytool: str = "keytool", apksigner: str = "apksigner"):
        self.keytool = keytool
        self.apksigner = apksigner

    def sign(self, unsigned: Path, output: Path, config: SigningConfig) -> Path:
        self.ensure_keystore(config)
        output.parent.mkdir(parents=True, exist_ok=True)
        self._run([
            self.apksigner, "sign",
            "--ks", str(config.keystore),
            "--ks-key-alias", config.key_alias,
            "--ks-pass", f"pass:{config.store_password}",
            "--key-pass", f"pass:{config.entry_password}",
            "--out", str(output),
            str(unsigned),
        ], "apksigner")
        logger.info("Signed %s", output)
        return output

    def ensure_keystore(self, config: SigningConfig) -> Path:
        """Create the keystore with a fresh key pair when it does not exist."""
        if config.keystore.exists():
            return config.keystore
        logger.info("Keystore %s not found, generating a new one", config.keystore)
        config.keystore.parent.mkdir(parents=True, exist_ok=True)
        self._run([
            self.keytool, "-genkeypair",
            "-keystore", str(config.keystore),
            "-storetype", "PKCS12",
            "-alias", config.key_alias,
            "-keyalg", "RSA",
            "-keysize", "4096",
            "-validity", "10000",
            "-storepass", config.store_password,
            "-keypass", config.entry_password,
            "-dname", f"CN={config.signer}",
        ], "keytool")
        return config.keystore

    def _run(self, cmd: list[str], tool: str) -> None:
        if shutil.which(cmd[0]) is None and not Path(cmd[0]).exists():
            raise SigningError(f"{tool} not found in PATH")
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            message = (result.stderr or result.stdout).strip()
            raise SigningError(f"{tool} failed: {message}")
