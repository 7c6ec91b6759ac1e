"""AES-256-GCM encrypted store for credentials such as ``ORBCOMM_AUTH``.

File format::

    [8 bytes:  magic "RTBSECRT"]
    [1 byte:   version = 0x01]
    [16 bytes: salt, bound as associated data]
    [12 bytes: nonce]
    [N bytes:  ciphertext + 16-byte GCM tag]

The 32-byte key lives in a separate key file (mode 0600).  Values are
resolved into the config as ``${NAME}`` placeholders.
"""

from __future__ import annotations

import os
from pathlib import Path

import orjson
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

MAGIC = b"RTBSECRT"
VERSION = 0x01
KEY_LEN = 32
SALT_LEN = 16
NONCE_LEN = 12
_HEADER_LEN = len(MAGIC) + 1 + SALT_LEN + NONCE_LEN


def _write_private(path: Path, data: bytes) -> None:
    path.write_bytes(data)
    os.chmod(path, 0o600)


def ensure_key(key_file: str | Path) -> bytes:
    """Return the key in *key_file*, generating it first if missing."""
    kf = Path(key_file)
    if not kf.exists():
        _write_private(kf, AESGCM.generate_key(bit_length=KEY_LEN * 8))
    return read_key(kf)


def read_key(key_file: str | Path) -> bytes:
    kf = Path(key_file)
    if not kf.exists():
        raise FileNotFoundError(f"Key file not found: {key_file}")
    key = kf.read_bytes()
    if len(key) != KEY_LEN:
        raise ValueError(f"Key file must be exactly {KEY_LEN} bytes, got {len(key)}")
    return key


class SecretStore:
    """Named secrets in one encrypted file."""

    def __init__(self, path: str | Path, key_file: str | Path) -> None:
        self.path = Path(path)
        self.key_file = Path(key_file)

    def init(self) -> None:
        """Create an empty store, generating the key file if needed."""
        self._write(ensure_key(self.key_file), {})

    def load(self) -> dict[str, str]:
        return self._read(read_key(self.key_file))

    def names(self) -> list[str]:
        return sorted(self.load())

    def set(self, name: str, value: str) -> None:
        key = read_key(self.key_file)
        store = self._read(key)
        store[name] = value
        self._write(key, store)

    def delete(self, name: str) -> bool:
        key = read_key(self.key_file)
        store = self._read(key)
        if store.pop(name, None) is None:
            return False
        self._write(key, store)
        return True

    def rekey(self, new_key_file: str | Path) -> None:
        """Re-encrypt under the key in *new_key_file* (generated if missing)."""
        store = self.load()
        self.key_file = Path(new_key_file)
        self._write(ensure_key(self.key_file), store)

    # ── internal ────────────────────────────────────────────────────

    def _write(self, key: bytes, store: dict[str, str]) -> None:
        salt = os.urandom(SALT_LEN)
        nonce = os.urandom(NONCE_LEN)
        ciphertext = AESGCM(key).encrypt(nonce, orjson.dumps(store), salt)
        _write_private(self.path, MAGIC + bytes([VERSION]) + salt + nonce + ciphertext)

    def _read(self, key: bytes) -> dict[str, str]:
        data = self.path.read_bytes()
        if len(data) < _HEADER_LEN or not data.startswith(MAGIC):
            raise ValueError("Invalid secrets file (bad magic)")
        if data[len(MAGIC)] != VERSION:
            raise ValueError(f"Unsupported secrets file version: {data[len(MAGIC)]}")

        offset = len(MAGIC) + 1
        salt = data[offset:offset + SALT_LEN]
        nonce = data[offset + SALT_LEN:_HEADER_LEN]
        return orjson.loads(AESGCM(key).decrypt(nonce, data[_HEADER_LEN:], salt))
