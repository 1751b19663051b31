"""Per-machine encryption key management for the data file."""

from __future__ import annotations

import base64
import hashlib
import logging
import platform
import uuid
from pathlib import Path

import keyring
from cryptography.fernet import Fernet, InvalidToken
from keyring.errors import KeyringError

from .errors import StoreCorruptionError
from .paths import get_keyref_path

logger = logging.getLogger(__name__)

KEYRING_SERVICE = "LightTrack"


class StoreCipher:
    """Symmetric encryption for stored values."""

    def __init__(self, key: bytes) -> None:
        self._fernet = Fernet(key)

    def encrypt(self, data: bytes) -> bytes:
        return self._fernet.encrypt(data)

    def decrypt(self, token: bytes) -> bytes:
        try:
            return self._fernet.decrypt(token)
        except InvalidToken as exc:
            raise StoreCorruptionError("Stored value could not be decrypted") from exc


def derive_machine_key(data_dir: Path) -> bytes:
    """Derive a stable key from machine-identifying attributes."""
    machine_id = "-".join(
        (platform.system(), platform.machine(), platform.node(), str(Path(data_dir).resolve()))
    )
    digest = hashlib.sha256(machine_id.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


def load_or_create_key(data_dir: Path) -> bytes:
    """Return the data-file key, generating it on first run.

    The key lives in the OS secret store; ``.keyref`` names the entry. Without a
    usable keyring backend the key is derived from the machine instead.
    """
    keyref_path = get_keyref_path(data_dir)
    try:
        if keyref_path.exists():
            reference = keyref_path.read_text(encoding="utf-8").strip()
            stored = keyring.get_password(KEYRING_SERVICE, reference)
            if stored:
                return stored.encode("ascii")
            logger.warning("Encryption key %s missing from keyring; generating a new one", reference)

        reference = f"data-key-{uuid.uuid4().hex}"
        key = Fernet.generate_key()
        keyring.set_password(KEYRING_SERVICE, reference, key.decode("ascii"))
        keyref_path.write_text(reference, encoding="utf-8")
        logger.info("Generated new data-file encryption key")
        return key
    except (KeyringError, OSError) as exc:
        logger.warning("OS secret store unavailable (%s); using machine-derived key", exc)
        return derive_machine_key(data_dir)


def create_cipher(data_dir: Path, *, dev_mode: bool = False) -> StoreCipher | None:
    if dev_mode:
        logger.info("Development mode: data file encryption disabled")
        return None
    return StoreCipher(load_or_create_key(data_dir))
