"""Pack SIGNATURE files.

A signature binds the canonical manifest bytes to a signer. Ed25519 is the
preferred algorithm; RSA-SHA256 / RSA-SHA512 (PKCS#1 v1.5) are accepted for
compatibility with packs signed elsewhere.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from packwright.core.json_canon import canonical_hash, canonical_json_bytes, pretty_json_text
from packwright.core.time import format_utc_z, utc_now
from packwright.pack.keys import load_ed25519_private_key, load_ed25519_public_key
from packwright.pack.manifest import MANIFEST_FILENAME, SIGNATURE_FILENAME


ALGORITHMS = ("Ed25519", "RSA-SHA256", "RSA-SHA512")


@dataclass(frozen=True)
class SignatureCheck:
    valid: bool
    errors: list[str] = field(default_factory=list)
    signature: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


def _read_manifest_raw(pack_root: Path) -> dict[str, Any]:
    path = Path(pack_root) / MANIFEST_FILENAME
    raw = json.loads(path.read_text(encoding="utf-8", errors="strict"))
    if not isinstance(raw, dict):
        raise ValueError(f"manifest is not a JSON object: {path}")
    return raw


def _rsa_hash(algorithm: str) -> Any:
    from cryptography.hazmat.primitives import hashes

    return hashes.SHA512() if algorithm == "RSA-SHA512" else hashes.SHA256()


def _sign_bytes(algorithm: str, private_key_blob: bytes, payload: bytes) -> bytes:
    if algorithm == "Ed25519":
        return load_ed25519_private_key(private_key_blob).sign(payload)

    from cryptography.hazmat.primitives import serialization
    from cryptography.hazmat.primitives.asymmetric import padding, rsa

    key = serialization.load_pem_private_key(private_key_blob.strip(), password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError(f"{algorithm} requires an RSA private key")
    return key.sign(payload, padding.PKCS1v15(), _rsa_hash(algorithm))


def _verify_bytes(algorithm: str, public_key_blob: bytes, sig: bytes, payload: bytes) -> bool:
    from cryptography.exceptions import InvalidSignature

    try:
        if algorithm == "Ed25519":
            load_ed25519_public_key(public_key_blob).verify(sig, payload)
            return True

        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import padding, rsa

        key = serialization.load_pem_public_key(public_key_blob.strip())
        if not isinstance(key, rsa.RSAPublicKey):
            return False
        key.verify(sig, payload, padding.PKCS1v15(), _rsa_hash(algorithm))
        return True
    except InvalidSignature:
        return False


def sign_pack(
    pack_root: Path,
    private_key_blob: bytes,
    *,
    signer: str,
    algorithm: str = "Ed25519",
    timestamp: str | None = None,
) -> dict[str, Any]:
    """Sign `pack.json` and write `SIGNATURE` next to it; returns the signature record."""

    if algorithm not in ALGORITHMS:
        raise ValueError(f"Unsupported algorithm: {algorithm}")
    if not isinstance(signer, str) or not signer:
        raise ValueError("signer missing/empty")

    pack_root = Path(pack_root)
    raw = _read_manifest_raw(pack_root)
    payload = canonical_json_bytes(raw)
    sig = _sign_bytes(algorithm, private_key_blob, payload)

    record = {
        "algorithm": algorithm,
        "signature": base64.b64encode(sig).decode("ascii"),
        "timestamp": timestamp or format_utc_z(utc_now()),
        "manifest_hash": canonical_hash(raw),
        "signer": signer,
        "pack_id": raw.get("id"),
        "pack_version": raw.get("version"),
    }
    (pack_root / SIGNATURE_FILENAME).write_text(pretty_json_text(record), encoding="utf-8", errors="strict")
    return record


def read_pack_signature(pack_root: Path) -> dict[str, Any] | None:
    path = Path(pack_root) / SIGNATURE_FILENAME
    if not path.is_file():
        return None
    obj = json.loads(path.read_text(encoding="utf-8", errors="strict"))
    if not isinstance(obj, dict):
        raise ValueError(f"{SIGNATURE_FILENAME} is not a JSON object")
    return obj


def verify_pack_signature(pack_root: Path, public_key_blob: bytes | None) -> SignatureCheck:
    """Verify `SIGNATURE` against the current manifest. Never raises for bad input."""

    pack_root = Path(pack_root)
    try:
        record = read_pack_signature(pack_root)
    except (OSError, ValueError) as e:
        return SignatureCheck(valid=False, errors=[f"Unreadable signature: {e}"])
    if record is None:
        return SignatureCheck(valid=False, errors=["No signature found"])

    errors: list[str] = []
    algorithm = record.get("algorithm")
    if algorithm not in ALGORITHMS:
        return SignatureCheck(valid=False, errors=[f"Unsupported algorithm: {algorithm}"], signature=record)

    try:
        raw = _read_manifest_raw(pack_root)
    except (OSError, ValueError) as e:
        return SignatureCheck(valid=False, errors=[f"Unreadable manifest: {e}"], signature=record)

    if record.get("manifest_hash") != canonical_hash(raw):
        errors.append("Manifest hash mismatch")
    if record.get("pack_id") != raw.get("id"):
        errors.append("Pack id mismatch")
    if record.get("pack_version") != raw.get("version"):
        errors.append("Pack version mismatch")

    if public_key_blob is None:
        errors.append("Public key not found")
        return SignatureCheck(valid=False, errors=errors, signature=record)

    try:
        sig = base64.b64decode(str(record.get("signature", "")), validate=True)
    except (binascii.Error, ValueError):
        errors.append("Invalid signature")
        return SignatureCheck(valid=False, errors=errors, signature=record)

    try:
        ok = _verify_bytes(algorithm, public_key_blob, sig, canonical_json_bytes(raw))
    except (ValueError, TypeError):
        ok = False
    if not ok and "Invalid signature" not in errors:
        errors.append("Invalid signature")

    return SignatureCheck(valid=not errors, errors=errors, signature=record)
