"""Ed25519 key management for receipt signing.

Key files live in a single owner-only directory:

- `private.ed25519`: 32-byte seed as hex (PEM PKCS8 also accepted), mode 0600
- `public.ed25519`: 32-byte raw public key as hex (PEM also accepted), mode 0644

Signing refuses to use a private key whose permissions are wider than 0600.
"""

from __future__ import annotations

import logging
import os
import stat
from pathlib import Path
from typing import Any

from packwright.core.hash import sha256_bytes
from packwright.pack.errors import SignError


logger = logging.getLogger(__name__)


PRIVATE_KEY_FILENAME = "private.ed25519"
PUBLIC_KEY_FILENAME = "public.ed25519"


def _hex_seed(blob: bytes) -> bytes | None:
    try:
        hex_s = blob.strip().decode("ascii", errors="strict").strip()
    except UnicodeDecodeError:
        return None
    if len(hex_s) == 64 and all(c in "0123456789abcdefABCDEF" for c in hex_s):
        return bytes.fromhex(hex_s)
    return None


def load_ed25519_public_key(blob: bytes) -> Any:
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

    raw = _hex_seed(blob)
    if raw is not None:
        return Ed25519PublicKey.from_public_bytes(raw)

    key = serialization.load_pem_public_key(blob.strip())
    if not isinstance(key, Ed25519PublicKey):
        raise ValueError("Public key is not Ed25519")
    return key


def load_ed25519_private_key(blob: bytes) -> Any:
    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    raw = _hex_seed(blob)
    if raw is not None:
        return Ed25519PrivateKey.from_private_bytes(raw)

    key = serialization.load_pem_private_key(blob.strip(), password=None)
    if not isinstance(key, Ed25519PrivateKey):
        raise ValueError("Private key is not Ed25519")
    return key


def public_key_bytes(pub: Any) -> bytes:
    from cryptography.hazmat.primitives import serialization

    return pub.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


def key_fingerprint(pub: Any) -> str:
    return sha256_bytes(public_key_bytes(pub))


def _write_key_file(path: Path, data: bytes, *, mode: int) -> None:
    fd = os.open(str(path), os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


def generate_keypair(key_dir: Path) -> tuple[Path, Path]:
    """Create a fresh key pair in `key_dir`; refuses to overwrite existing keys."""

    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey

    key_dir = Path(key_dir)
    key_dir.mkdir(parents=True, exist_ok=True)
    if os.name == "posix":
        os.chmod(key_dir, 0o700)

    priv_path = key_dir / PRIVATE_KEY_FILENAME
    pub_path = key_dir / PUBLIC_KEY_FILENAME
    if priv_path.exists() or pub_path.exists():
        raise SignError(f"Key files already exist in {key_dir}", reason="exists", keyDir=str(key_dir))

    sk = Ed25519PrivateKey.generate()
    seed = sk.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    _write_key_file(priv_path, (seed.hex() + "\n").encode("ascii"), mode=0o600)
    _write_key_file(pub_path, (public_key_bytes(sk.public_key()).hex() + "\n").encode("ascii"), mode=0o644)
    logger.info("generated Ed25519 signing key pair in %s", key_dir)
    return priv_path, pub_path


def check_private_key_permissions(path: Path) -> None:
    if os.name != "posix":
        return
    mode = stat.S_IMODE(path.stat().st_mode)
    if mode & 0o077:
        raise SignError(
            f"Private key permissions too open ({oct(mode)}): {path}; expected 0600",
            reason="permissions",
            path=str(path),
            mode=oct(mode),
        )


class KeyStore:
    """Key directory handle; keys are loaded on demand."""

    def __init__(self, key_dir: Path, *, generate: bool = True) -> None:
        self.key_dir = Path(key_dir)
        self.generate = generate

    @property
    def private_path(self) -> Path:
        return self.key_dir / PRIVATE_KEY_FILENAME

    @property
    def public_path(self) -> Path:
        return self.key_dir / PUBLIC_KEY_FILENAME

    def has_keys(self) -> bool:
        return self.private_path.is_file() and self.public_path.is_file()

    def ensure_keys(self) -> None:
        if self.has_keys():
            return
        if not self.generate:
            raise SignError(f"Signing key not found in {self.key_dir}", reason="no-key", keyDir=str(self.key_dir))
        generate_keypair(self.key_dir)

    def load_private(self) -> Any:
        self.ensure_keys()
        check_private_key_permissions(self.private_path)
        try:
            return load_ed25519_private_key(self.private_path.read_bytes())
        except (OSError, ValueError, TypeError) as e:
            raise SignError(f"Failed to load private key: {e}", reason="crypto", path=str(self.private_path)) from e

    def load_public(self) -> Any | None:
        if not self.public_path.is_file():
            return None
        try:
            return load_ed25519_public_key(self.public_path.read_bytes())
        except (OSError, ValueError, TypeError) as e:
            logger.warning("unreadable public key %s: %s", self.public_path, e)
            return None
