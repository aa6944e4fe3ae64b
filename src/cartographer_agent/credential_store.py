"""
Local encrypted storage for cloud credentials.

Credentials are stored encrypted at rest using Fernet symmetric encryption
with a key derived from a per-install secret plus the machine identity, so a
copied credentials file cannot be decrypted on another machine.
"""

import base64
import json
import logging
import os
import secrets
import threading
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ._types import Credentials, now_utc

logger = logging.getLogger(__name__)


def _get_machine_id() -> str:
    """Get a stable machine identifier for key derivation.

    Tries /etc/machine-id (systemd) first, falls back to a NIC MAC address.
    """
    try:
        machine_id_path = Path("/etc/machine-id")
        if machine_id_path.exists():
            return machine_id_path.read_text().strip()
    except OSError:
        pass

    try:
        for iface in sorted(Path("/sys/class/net").iterdir()):
            if iface.name in ("lo", "docker0"):
                continue
            addr_file = iface / "address"
            if addr_file.exists():
                mac = addr_file.read_text().strip()
                if mac and mac != "00:00:00:00:00:00":
                    return mac
    except OSError:
        pass

    return "fallback-machine-id"


def _derive_key(install_secret: bytes, machine_id: str) -> bytes:
    """Derive a Fernet key from the install secret + machine ID (HKDF-SHA256)."""
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=b"cartographer-credential-store-v1",
        info=b"agent-credential-encryption",
    )
    derived = hkdf.derive(install_secret + b":" + machine_id.encode())
    return base64.urlsafe_b64encode(derived)


def _write_private(path: Path, data: bytes) -> None:
    """Atomic write: temp file with 0600, then rename over the target."""
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.replace(tmp_path, path)
    os.chmod(path, 0o600)


class CredentialStore:
    """Fernet-encrypted credential file.

    Credentials live at {state_dir}/credentials.enc. Writes are serialised by
    a lock and replace the file atomically, so readers never observe a
    partially written file.

    Usage:
        store = CredentialStore(state_dir=Path("~/.local/share/cartographer-agent"))
        store.save(credentials)
        creds = store.load()
    """

    def __init__(self, state_dir: Path, machine_id: Optional[str] = None):
        self._state_dir = Path(state_dir)
        self._state_dir.mkdir(parents=True, exist_ok=True)
        self._store_path = self._state_dir / "credentials.enc"
        self._secret_path = self._state_dir / "install.key"
        self._lock = threading.Lock()
        self._machine_id = machine_id or _get_machine_id()
        self._fernet = Fernet(_derive_key(self._install_secret(), self._machine_id))

    @property
    def path(self) -> Path:
        return self._store_path

    def _install_secret(self) -> bytes:
        if self._secret_path.exists():
            return self._secret_path.read_bytes()
        secret = secrets.token_bytes(32)
        _write_private(self._secret_path, secret)
        return secret

    def save(self, credentials: Credentials) -> None:
        """Encrypt and persist credentials, replacing any stored ones."""
        data = json.dumps(credentials.to_dict()).encode("utf-8")
        with self._lock:
            _write_private(self._store_path, self._fernet.encrypt(data))
        logger.info(f"Stored credentials for network {credentials.network_id}")

    def load(self) -> Optional[Credentials]:
        """
        Load stored credentials.

        Returns None when nothing is stored, the file cannot be decrypted, or
        the credentials expired and cannot be refreshed. Expired credentials
        without a refresh token are deleted.
        """
        with self._lock:
            if not self._store_path.exists():
                return None
            try:
                decrypted = self._fernet.decrypt(self._store_path.read_bytes())
                credentials = Credentials.from_dict(json.loads(decrypted.decode("utf-8")))
            except (InvalidToken, ValueError, KeyError) as e:
                logger.error(f"Failed to load credential store: {e}")
                return None

        if credentials.is_expired(now_utc()) and not credentials.refresh_token:
            logger.info("Stored credentials expired, removing")
            self.clear()
            return None
        return credentials

    def clear(self) -> None:
        """Remove stored credentials."""
        with self._lock:
            if self._store_path.exists():
                self._store_path.unlink()
        logger.info("Cleared stored credentials")

    def has_credentials(self) -> bool:
        return self.load() is not None
