"""Receipts: build, hash, sign, persist, query and verify.

A receipt is the single record shared by plan/apply/update/remove. Its
`integrity.receipt` hash is computed over the canonical receipt with
`integrity.receipt` and `signature` set to null; the optional Ed25519
signature covers the canonical receipt without `signature` and without
`integrity.receipt`.

Receipts are attached as git notes under `refs/notes/<engine>/pack-receipts`
on the receipt's commit (or HEAD). When a commit already carries receipts the
note body becomes a JSON array; readers accept either shape. The latest
install/update receipt of each pack is also kept at
`<target>/<engine-dir>/packs/<id>/receipt.json`.
"""

from __future__ import annotations

import base64
import binascii
import copy
import csv
import getpass
import io
import json
import logging
import os
import platform
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping

from packwright.core.hash import sha256_bytes
from packwright.core.json_canon import canonical_hash, canonical_json_bytes, pretty_json_text
from packwright.core.time import format_utc_z_ms
from packwright.pack.capabilities import Clock, SystemClock
from packwright.pack.errors import SignError
from packwright.pack.fileops import atomic_write_bytes
from packwright.pack.keys import KeyStore, key_fingerprint
from packwright.pack.manifest import pack_dir_name
from packwright.pack.vcs import NullVcs, Vcs


logger = logging.getLogger(__name__)


RECEIPT_KIND = "pack-receipt"
RECEIPT_FILENAME = "receipt.json"
PACKS_DIR = "packs"
OPERATIONS = ("install", "update", "remove", "verify")
STATUSES = ("success", "partial", "failure", "started")
REQUIRED_FIELDS = (
    "kind",
    "id",
    "version",
    "operation",
    "status",
    "timestamp",
    "commit",
    "worktree",
    "fingerprint",
    "mode",
    "details",
    "environment",
    "artifacts",
    "integrity",
)
CSV_COLUMNS = ("id", "version", "operation", "status", "timestamp", "commit")

_CI_VARS = ("CI", "GITHUB_ACTIONS", "GITLAB_CI", "BUILDKITE", "CIRCLECI", "JENKINS_URL", "TF_BUILD")


def default_notes_ref(engine_name: str) -> str:
    return f"refs/notes/{engine_name}/pack-receipts"


def _is_ci(env: Mapping[str, str]) -> bool:
    for var in _CI_VARS:
        v = env.get(var)
        if v and v.strip().lower() not in ("0", "false", "no"):
            return True
    return False


def _current_user(env: Mapping[str, str]) -> str:
    try:
        return getpass.getuser()
    except (OSError, KeyError):
        return env.get("USER") or env.get("USERNAME") or "unknown"


def environment_snapshot(*, timestamp: str, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    from packwright import engine_version

    env = os.environ if env is None else env
    return {
        "runtime": f"Python {platform.python_version()}",
        "platform": sys.platform,
        "arch": platform.machine() or "unknown",
        "user": _current_user(env),
        "ci": _is_ci(env),
        "engineVersion": engine_version(),
        "pwd": os.getcwd(),
        "utcTimestamp": timestamp,
    }


def receipt_integrity(receipt: Mapping[str, Any]) -> str:
    """Hash of the receipt with integrity.receipt and signature cleared."""

    r = copy.deepcopy(dict(receipt))
    integrity = dict(r.get("integrity") or {})
    integrity["receipt"] = None
    r["integrity"] = integrity
    r["signature"] = None
    return canonical_hash(r)


def signing_payload(receipt: Mapping[str, Any]) -> bytes:
    """Canonical bytes of the receipt minus `signature` and `integrity.receipt`."""

    r = copy.deepcopy(dict(receipt))
    r.pop("signature", None)
    integrity = dict(r.get("integrity") or {})
    integrity.pop("receipt", None)
    r["integrity"] = integrity
    return canonical_json_bytes(r)


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


class ReceiptSigner:
    """Ed25519 signer over a KeyStore."""

    def __init__(self, keys: KeyStore, *, clock: Clock | None = None) -> None:
        self.keys = keys
        self.clock = clock if clock is not None else SystemClock()

    def sign(self, receipt: Mapping[str, Any]) -> dict[str, Any]:
        sk = self.keys.load_private()
        payload = signing_payload(receipt)
        try:
            sig = sk.sign(payload)
        except (TypeError, ValueError) as e:
            raise SignError(f"Signing failed: {e}", reason="crypto") from e
        return {
            "algorithm": "Ed25519",
            "signature": base64.b64encode(sig).decode("ascii"),
            "dataHash": sha256_bytes(payload),
            "keyFingerprint": key_fingerprint(sk.public_key()),
            "issuedAt": format_utc_z_ms(self.clock.now()),
            "packId": receipt.get("id"),
            "packVersion": receipt.get("version"),
        }

    def verify(self, receipt: Mapping[str, Any]) -> list[str]:
        from cryptography.exceptions import InvalidSignature

        sig = receipt.get("signature")
        if not isinstance(sig, dict) or sig.get("algorithm") != "Ed25519":
            return ["Unsupported signature algorithm"]

        payload = signing_payload(receipt)
        if sig.get("dataHash") != sha256_bytes(payload):
            return ["Invalid signature"]

        pub = self.keys.load_public()
        if pub is None:
            return ["Public key not available"]
        if sig.get("keyFingerprint") != key_fingerprint(pub):
            return ["Signing key mismatch"]
        try:
            sig_bytes = base64.b64decode(str(sig.get("signature", "")), validate=True)
            pub.verify(sig_bytes, payload)
        except (binascii.Error, ValueError, InvalidSignature):
            return ["Invalid signature"]
        return []


def _flatten_note(body: str) -> list[dict[str, Any]]:
    try:
        obj = json.loads(body)
    except json.JSONDecodeError:
        return []
    items = obj if isinstance(obj, list) else [obj]
    return [r for r in items if isinstance(r, dict) and r.get("kind") == RECEIPT_KIND]


def sort_receipts(receipts: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    return sorted(receipts, key=lambda r: str(r.get("timestamp", "")), reverse=True)


class ReceiptStore:
    """Receipt persistence and queries for one target tree."""

    def __init__(
        self,
        target: Path,
        *,
        vcs: Vcs | None = None,
        engine_dir: str = ".packwright",
        notes_ref: str = "refs/notes/packwright/pack-receipts",
        signer: ReceiptSigner | None = None,
        sign: bool = False,
        require_signature: bool = False,
        clock: Clock | None = None,
    ) -> None:
        self.target = Path(target).resolve()
        self.vcs = vcs if vcs is not None else NullVcs()
        self.engine_dir = engine_dir
        self.notes_ref = notes_ref
        self.signer = signer
        self.sign = sign
        self.require_signature = require_signature
        self.clock = clock if clock is not None else SystemClock()

    # paths

    @property
    def packs_dir(self) -> Path:
        return self.target / self.engine_dir / PACKS_DIR

    def pack_dir(self, pack_id: str) -> Path:
        return self.packs_dir / pack_dir_name(pack_id)

    def receipt_path(self, pack_id: str) -> Path:
        return self.pack_dir(pack_id) / RECEIPT_FILENAME

    def backup_dir(self, pack_id: str) -> Path:
        return self.pack_dir(pack_id) / "backups"

    # construction

    def now(self) -> str:
        return format_utc_z_ms(self.clock.now())

    def build(
        self,
        *,
        pack_id: str,
        version: str,
        operation: str,
        status: str,
        fingerprint: str,
        manifest_hash: str,
        mode: str | None,
        details: Mapping[str, Any] | None = None,
        artifacts: list[dict[str, Any]] | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        if operation not in OPERATIONS:
            raise ValueError(f"receipt operation invalid: {operation}")
        if status not in STATUSES:
            raise ValueError(f"receipt status invalid: {status}")

        timestamp = self.now()
        commit = self.vcs.head() if self.vcs.is_repository() else None
        receipt: dict[str, Any] = {
            "kind": RECEIPT_KIND,
            "id": pack_id,
            "version": version,
            "operation": operation,
            "status": status,
            "timestamp": timestamp,
            "commit": commit or "unknown",
            "worktree": str(self.target),
            "fingerprint": fingerprint,
            "mode": mode,
            "details": dict(details or {}),
            "environment": environment_snapshot(timestamp=timestamp),
            "artifacts": list(artifacts or []),
            "integrity": {"manifest": manifest_hash, "receipt": None},
            "signature": None,
        }
        for k, v in (extra or {}).items():
            receipt[k] = v
        return self.seal(receipt)

    def seal(self, receipt: dict[str, Any]) -> dict[str, Any]:
        """Sign (when enabled) and assign integrity.receipt last."""

        receipt["signature"] = None
        if self.sign:
            if self.signer is None:
                err = SignError("Receipt signing requested but no signer configured", reason="no-key")
                if self.require_signature:
                    raise err
                logger.warning("%s; receipt left unsigned", err.message)
            else:
                try:
                    receipt["signature"] = self.signer.sign(receipt)
                except SignError as e:
                    if self.require_signature:
                        raise
                    logger.warning("receipt for %s left unsigned: %s", receipt.get("id"), e.message)
        receipt["integrity"]["receipt"] = receipt_integrity(receipt)
        return receipt

    # persistence

    def write(self, receipt: Mapping[str, Any], *, file_copy: bool = True) -> dict[str, Any]:
        """Persist a receipt to the notes ref and (optionally) the per-pack file."""

        where: dict[str, Any] = {"note": None, "file": None}
        body = pretty_json_text(receipt)

        if self.vcs.is_repository():
            anchor = receipt.get("commit") if receipt.get("commit") not in (None, "unknown") else "HEAD"
            try:
                existing = self.vcs.read_note(self.notes_ref, anchor)
                if existing:
                    prior = _flatten_note(existing)
                    body = pretty_json_text([*prior, dict(receipt)])
                self.vcs.write_note(self.notes_ref, anchor, body)
                where["note"] = anchor
            except OSError as e:
                logger.warning("receipt note not written for %s: %s", receipt.get("id"), e)

        if file_copy:
            path = self.receipt_path(str(receipt["id"]))
            atomic_write_bytes(path, pretty_json_text(receipt).encode("utf-8"))
            where["file"] = str(path)

        logger.info(
            "receipt written: %s@%s %s/%s",
            receipt.get("id"),
            receipt.get("version"),
            receipt.get("operation"),
            receipt.get("status"),
        )
        return where

    def read_installed(self, pack_id: str) -> dict[str, Any] | None:
        path = self.receipt_path(pack_id)
        if not path.is_file():
            return None
        try:
            obj = json.loads(path.read_text(encoding="utf-8", errors="strict"))
        except (OSError, ValueError) as e:
            logger.warning("ignoring unreadable receipt %s: %s", path, e)
            return None
        return obj if isinstance(obj, dict) and obj.get("kind") == RECEIPT_KIND else None

    def installed(self) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        if not self.packs_dir.is_dir():
            return out
        for d in sorted(self.packs_dir.iterdir()):
            path = d / RECEIPT_FILENAME
            if not path.is_file():
                continue
            try:
                obj = json.loads(path.read_text(encoding="utf-8", errors="strict"))
            except (OSError, ValueError) as e:
                logger.warning("ignoring unreadable receipt %s: %s", path, e)
                continue
            if isinstance(obj, dict) and obj.get("kind") == RECEIPT_KIND:
                out.append(obj)
        return out

    def erase_pack_dir(self, pack_id: str) -> None:
        d = self.pack_dir(pack_id)
        if d.exists():
            shutil.rmtree(d)

    # queries

    def all(self) -> list[dict[str, Any]]:
        """Every receipt from the notes ref, newest first (files when no repository)."""

        if not self.vcs.is_repository():
            return sort_receipts(self.installed())
        receipts: list[dict[str, Any]] = []
        for note_oid, _annotated in self.vcs.list_notes(self.notes_ref):
            body = self.vcs.read_object(note_oid)
            if body is None:
                continue
            parsed = _flatten_note(body)
            if not parsed:
                logger.debug("skipping invalid receipt note %s", note_oid)
            receipts.extend(parsed)
        return sort_receipts(receipts)

    def read(self, pack_id: str | None = None, *, latest: bool = False) -> Any:
        receipts = [r for r in self.all() if pack_id is None or r.get("id") == pack_id]
        if latest:
            return receipts[0] if receipts else None
        return receipts

    def list_by_status(self, status: str) -> list[dict[str, Any]]:
        return [r for r in self.all() if r.get("status") == status]

    def list_by_operation(self, operation: str) -> list[dict[str, Any]]:
        return [r for r in self.all() if r.get("operation") == operation]

    def history(self, pack_id: str) -> list[dict[str, Any]]:
        return self.read(pack_id)

    def export(self, fmt: str = "json") -> str:
        receipts = self.all()
        if fmt == "json":
            return json.dumps(receipts, indent=2, sort_keys=True, ensure_ascii=False) + "\n"
        if fmt == "csv":
            buf = io.StringIO()
            w = csv.writer(buf, lineterminator="\n")
            w.writerow(CSV_COLUMNS)
            for r in receipts:
                w.writerow([r.get(c, "") for c in CSV_COLUMNS])
            return buf.getvalue()
        raise ValueError(f"unsupported export format: {fmt}")

    # verification

    def verify(self, receipt: Mapping[str, Any]) -> VerifyResult:
        missing = [f for f in REQUIRED_FIELDS if f not in receipt]
        if missing:
            return VerifyResult(valid=False, errors=[f"Missing required field: {f}" for f in missing])

        errors: list[str] = []
        if receipt.get("kind") != RECEIPT_KIND:
            errors.append(f"Unexpected receipt kind: {receipt.get('kind')}")

        if receipt.get("signature") is not None:
            if self.signer is None:
                errors.append("No signer available to verify signature")
            else:
                sig_errors = self.signer.verify(receipt)
                if sig_errors:
                    return VerifyResult(valid=False, errors=errors + sig_errors)

        integrity = receipt.get("integrity")
        if not isinstance(integrity, dict) or integrity.get("receipt") != receipt_integrity(receipt):
            errors.append("Receipt integrity check failed")

        commit = receipt.get("commit")
        if commit not in (None, "unknown") and self.vcs.is_repository() and not self.vcs.commit_exists(str(commit)):
            errors.append(f"Commit not found: {commit}")

        return VerifyResult(valid=not errors, errors=errors)
