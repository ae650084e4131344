"""Engine: the orchestrating root for plan, apply, update, remove, status and verify.

One `Engine` composes the stateless components (Planner, Applier, Policy,
ReceiptStore) per call; collaborators that touch the outside world come in
through an `EngineContext`. Every public method returns a typed result:
taxonomy errors and OS errors are caught here and reported in the result's `error` field
together with the CLI exit code they map to.
"""

from __future__ import annotations

import logging
import shutil
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping

from packwright.config import EngineConfig
from packwright.core.hash import sha256_file
from packwright.core.jail import ensure_within_root, safe_relpath
from packwright.pack.applier import NO_OP, Applier, ApplyResult, raise_fatal_conflicts
from packwright.pack.capabilities import (
    CancelToken,
    Clock,
    ExecCapability,
    PromptCapability,
    Registry,
    SystemClock,
    TemplateRenderer,
)
from packwright.pack.detect import ModeDetector
from packwright.pack.errors import (
    EXIT_CONFLICT,
    EXIT_ERROR,
    EXIT_OK,
    ApplyError,
    PackError,
    PolicyViolation,
    SignError,
)
from packwright.pack.fileops import atomic_write_bytes, load_backup, prune_empty_dirs
from packwright.pack.inputs import InputResolver
from packwright.pack.keys import KeyStore
from packwright.pack.lock import TargetLock
from packwright.pack.manifest import Manifest, check_constraints, load_manifest, parse_version, update_type
from packwright.pack.planner import PlanResult, Planner
from packwright.pack.policy import Policy, PolicyDecision
from packwright.pack.receipt import ReceiptSigner, ReceiptStore, VerifyResult
from packwright.pack.steps import Plan
from packwright.pack.vcs import GitVcs, Vcs


logger = logging.getLogger(__name__)


# Update outcomes
CURRENT = "CURRENT"
RISKS = "RISKS"
UPDATED = "UPDATED"
INSTALLED = "INSTALLED"

# Remove outcomes
OK = "OK"
PARTIAL = "PARTIAL"
ERROR = "ERROR"
NOT_FOUND = "NOT_FOUND"

# Verify outcomes
VALID = "VALID"
INVALID = "INVALID"
DRIFTED = "DRIFTED"


def _error_dict(e: PackError) -> dict[str, Any]:
    out = e.to_dict()
    out["exitCode"] = e.exit_code
    return out


def _io_error_dict(e: OSError) -> dict[str, Any]:
    return _error_dict(ApplyError(str(e), reason="io", cause=type(e).__name__))


@dataclass
class EngineContext:
    """Capabilities handed to every operation."""

    vcs_factory: Callable[[Path], Vcs] = GitVcs
    renderer: TemplateRenderer | None = None
    prompt: PromptCapability | None = None
    registry: Registry | None = None
    exec_capability: ExecCapability | None = None
    clock: Clock = field(default_factory=SystemClock)


@dataclass
class PlanOutcome:
    status: str
    plan: Plan | None = None
    warnings: list[str] = field(default_factory=list)
    policy: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "warnings": list(self.warnings)}
        if self.plan is not None:
            out["plan"] = self.plan.to_dict()
            out["impacts"] = self.plan.impacts.to_dict()
            out["conflicts"] = [c.to_dict() for c in self.plan.conflicts]
        if self.policy is not None:
            out["policy"] = self.policy
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class UpdateResult:
    status: str
    risks: list[dict[str, Any]] = field(default_factory=list)
    plan: Plan | None = None
    previous_version: str | None = None
    apply: ApplyResult | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "risks": list(self.risks)}
        if self.previous_version is not None:
            out["previousVersion"] = self.previous_version
        if self.plan is not None:
            out["plan"] = self.plan.to_dict()
        if self.apply is not None:
            out["apply"] = self.apply.to_dict()
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class RemoveResult:
    status: str
    pack_id: str
    version: str | None = None
    removed: list[str] = field(default_factory=list)
    restored: list[str] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    receipt: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "pack": self.pack_id,
            "version": self.version,
            "removed": list(self.removed),
            "restored": list(self.restored),
            "skipped": list(self.skipped),
            "errors": list(self.errors),
        }
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class StatusResult:
    status: str
    packs: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"status": self.status, "packs": list(self.packs)}
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass
class EngineVerifyResult:
    status: str
    valid: bool = False
    errors: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)
    receipt: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "status": self.status,
            "valid": self.valid,
            "errors": list(self.errors),
            "modified": list(self.modified),
            "missing": list(self.missing),
        }
        if self.error is not None:
            out["error"] = self.error
        return out


def exit_code_for(result: Any) -> int:
    """CLI exit code for any engine result."""

    error = getattr(result, "error", None)
    if isinstance(error, dict):
        return int(error.get("exitCode", EXIT_ERROR))
    nested = getattr(result, "apply", None)
    if nested is not None:
        return exit_code_for(nested)
    status = getattr(result, "status", None)
    if status in ("failure", "partial", ERROR, INVALID):
        return EXIT_ERROR
    if status in (RISKS, PARTIAL):
        return EXIT_CONFLICT
    return EXIT_OK


def assess_update_risks(previous: Mapping[str, Any], manifest: Manifest, plan: Plan) -> list[dict[str, Any]]:
    """Advisory risks of moving from the installed receipt to `manifest`."""

    risks: list[dict[str, Any]] = []
    old_version = str(previous.get("version", "0.0.0"))
    try:
        old_major = parse_version(old_version)[0]
    except ValueError:
        old_major = 0
    new_major = parse_version(manifest.version)[0]
    if new_major > old_major:
        risks.append(
            {
                "type": "major-version",
                "severity": "high",
                "message": f"Major version change: {old_version} -> {manifest.version}",
                "payload": {"from": old_version, "to": manifest.version},
            }
        )

    overwrites = [m["path"] for m in plan.impacts.modifies if m.get("risk") == "overwrite"]
    if overwrites:
        risks.append(
            {
                "type": "file-overwrites",
                "severity": "medium",
                "message": f"Will overwrite {len(overwrites)} files",
                "payload": {"files": overwrites},
            }
        )

    if plan.impacts.dependencies:
        risks.append(
            {
                "type": "dependency-changes",
                "severity": "medium",
                "message": "Dependency changes detected",
                "payload": {"added": list(plan.impacts.dependencies)},
            }
        )
    return risks


class Engine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        policy: Policy | None = None,
        context: EngineContext | None = None,
        *,
        keys: KeyStore | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self.policy = policy if policy is not None else Policy()
        self.context = context if context is not None else EngineContext()
        self._keys = keys

    # composition

    @property
    def keys(self) -> KeyStore:
        if self._keys is None:
            self._keys = KeyStore(self.config.resolved_key_dir)
        return self._keys

    def store(self, target: Path) -> ReceiptStore:
        target = Path(target).resolve()
        signer = ReceiptSigner(self.keys, clock=self.context.clock) if self.config.sign_receipts else None
        return ReceiptStore(
            target,
            vcs=self.context.vcs_factory(target),
            engine_dir=self.config.engine_dir,
            notes_ref=self.config.resolved_notes_ref,
            signer=signer,
            sign=self.config.sign_receipts,
            require_signature=self.config.require_signature,
            clock=self.context.clock,
        )

    def verifier_store(self, target: Path) -> ReceiptStore:
        """A store that can check signatures even when signing new receipts is off."""

        store = self.store(target)
        if store.signer is None and self.keys.has_keys():
            store.signer = ReceiptSigner(self.keys, clock=self.context.clock)
        return store

    def planner(self) -> Planner:
        return Planner(
            descriptor=self.config.descriptor,
            clock=self.context.clock,
            recent_modification_seconds=self.config.recent_modification_seconds,
            post_action_timeout=self.config.post_action_timeout,
        )

    def applier(self, store: ReceiptStore) -> Applier:
        return Applier(
            store=store,
            renderer=self.context.renderer,
            exec_capability=self.context.exec_capability,
            policy=self.policy,
            clock=self.context.clock,
            continue_on_error=self.config.continue_on_error,
            max_workers=self.config.max_workers,
        )

    def lock(self, target: Path, operation: str) -> TargetLock:
        return TargetLock(
            self.config.engine_root(target),
            stale_after_seconds=self.config.stale_lock_seconds,
            operation=operation,
        )

    # pipeline pieces

    def _prepare(
        self,
        pack_path: Path,
        target: Path,
        inputs: Mapping[str, Any] | None,
        *,
        mode: str | None,
        store: ReceiptStore,
    ) -> tuple[Manifest, PlanResult, dict[str, Any] | None]:
        """Manifest -> constraints -> inputs -> mode -> plan. Never mutates the target."""

        target = Path(target).resolve()
        manifest = load_manifest(Path(pack_path))
        warnings = check_constraints(manifest, vcs_available=store.vcs.is_repository())
        installed = store.read_installed(manifest.id)
        resolved = InputResolver(self.context.prompt, base_dir=target).resolve(manifest, inputs)
        if mode is None:
            mode = ModeDetector(descriptor=self.config.descriptor).detect(target, manifest)
        result = self.planner().plan(manifest, target, mode=mode, inputs=resolved, installed=installed)
        result.warnings.extend(warnings)
        return manifest, result, installed

    def _check_signing(self) -> None:
        if self.config.sign_receipts and self.config.require_signature:
            self.keys.load_private()

    def _veto(self, decision: PolicyDecision) -> PolicyViolation:
        return PolicyViolation(
            f"Policy vetoed {decision.operation}: {'; '.join(decision.violations)}",
            reason="veto",
            violations=list(decision.violations),
            operation=decision.operation,
        )

    # operations

    def plan(
        self,
        pack_path: Path,
        target: Path,
        inputs: Mapping[str, Any] | None = None,
        *,
        mode: str | None = None,
        approved: bool = False,
    ) -> PlanOutcome:
        try:
            store = self.store(target)
            manifest, result, _installed = self._prepare(pack_path, target, inputs, mode=mode, store=store)
            decision = self.policy.evaluate(manifest, result.plan, operation="install", approved=approved)
        except PackError as e:
            return PlanOutcome(status="ERROR", error=_error_dict(e))
        return PlanOutcome(
            status=result.status,
            plan=result.plan,
            warnings=list(result.warnings) + list(decision.warnings),
            policy=decision.to_dict(),
        )

    def apply(
        self,
        pack_path: Path,
        target: Path,
        inputs: Mapping[str, Any] | None = None,
        *,
        mode: str | None = None,
        approved: bool = False,
        cancel: CancelToken | None = None,
    ) -> ApplyResult:
        target = Path(target).resolve()
        try:
            store = self.store(target)
            manifest, result, installed = self._prepare(pack_path, target, inputs, mode=mode, store=store)
            applier = self.applier(store)
            done = applier.already_applied(manifest)
            if done is not None:
                logger.info("%s@%s already applied to %s", manifest.id, manifest.version, target)
                return ApplyResult(
                    status=NO_OP, inputs=dict(result.plan.inputs), mode=result.plan.mode, receipt=done
                )

            raise_fatal_conflicts(result.plan)
            operation = "update" if installed is not None else "install"
            decision = self.policy.evaluate(manifest, result.plan, operation=operation, approved=approved)
            if not decision.allowed:
                raise self._veto(decision)
            self._check_signing()

            extra: dict[str, Any] = {}
            if installed is not None and installed.get("version") != manifest.version:
                extra["previousVersion"] = installed.get("version")
            logger.info("applying %s@%s to %s (%s)", manifest.id, manifest.version, target, result.plan.mode)
            with self.lock(target, operation):
                out = applier.apply(manifest, result.plan, operation=operation, cancel=cancel, extra_details=extra)
        except PackError as e:
            return ApplyResult(status="error", inputs=dict(inputs or {}), error=_error_dict(e))
        except OSError as e:
            logger.error("apply of %s to %s failed: %s", pack_path, target, e)
            return ApplyResult(status="error", inputs=dict(inputs or {}), error=_io_error_dict(e))
        out.warnings = list(result.warnings) + list(decision.warnings)
        return out

    def update(
        self,
        pack_path: Path,
        target: Path,
        inputs: Mapping[str, Any] | None = None,
        *,
        force: bool = False,
        mode: str | None = None,
        approved: bool = False,
        cancel: CancelToken | None = None,
    ) -> UpdateResult:
        target = Path(target).resolve()
        try:
            store = self.store(target)
            manifest = load_manifest(Path(pack_path))
            installed = store.read_installed(manifest.id)
        except PackError as e:
            return UpdateResult(status=ERROR, error=_error_dict(e))
        except OSError as e:
            return UpdateResult(status=ERROR, error=_io_error_dict(e))

        if installed is None:
            logger.warning("pack %s not installed in %s; applying instead", manifest.id, target)
            res = self.apply(pack_path, target, inputs, mode=mode, approved=approved, cancel=cancel)
            return UpdateResult(status=ERROR if res.error else INSTALLED, apply=res, error=res.error)

        previous_version = str(installed.get("version"))
        if (
            installed.get("version") == manifest.version
            and installed.get("fingerprint") == manifest.fingerprint()
            and installed.get("status") == "success"
        ):
            return UpdateResult(status=CURRENT, previous_version=previous_version)

        # inputs recorded by the installed receipt are the defaults for this run
        merged = dict((installed.get("details") or {}).get("inputs") or {})
        declared = {spec.key for spec in manifest.inputs}
        merged = {k: v for k, v in merged.items() if k in declared and v is not None}
        merged.update(inputs or {})

        try:
            manifest, result, installed = self._prepare(pack_path, target, merged, mode=mode, store=store)
        except PackError as e:
            return UpdateResult(status=ERROR, previous_version=previous_version, error=_error_dict(e))
        except OSError as e:
            return UpdateResult(status=ERROR, previous_version=previous_version, error=_io_error_dict(e))

        risks = assess_update_risks(installed or {}, manifest, result.plan)
        if any(r["severity"] == "high" for r in risks) and not force:
            logger.info("update of %s to %s blocked by risks", manifest.id, manifest.version)
            return UpdateResult(status=RISKS, risks=risks, plan=result.plan, previous_version=previous_version)

        try:
            raise_fatal_conflicts(result.plan)
            decision = self.policy.evaluate(manifest, result.plan, operation="update", approved=approved)
            if not decision.allowed:
                raise self._veto(decision)
            self._check_signing()
            logger.info("updating %s from %s to %s", manifest.id, previous_version, manifest.version)
            with self.lock(target, "update"):
                out = self.applier(store).apply(
                    manifest,
                    result.plan,
                    operation="update",
                    cancel=cancel,
                    extra_details={"previousVersion": previous_version, "risks": risks},
                )
        except (PackError, OSError) as e:
            err = _error_dict(e) if isinstance(e, PackError) else _io_error_dict(e)
            return UpdateResult(status=ERROR, risks=risks, plan=result.plan, previous_version=previous_version, error=err)
        out.warnings = list(result.warnings) + list(decision.warnings)
        status = ERROR if out.error is not None else UPDATED
        return UpdateResult(status=status, risks=risks, plan=result.plan, previous_version=previous_version, apply=out)

    def remove(self, pack_id: str, target: Path, *, force: bool = False) -> RemoveResult:
        target = Path(target).resolve()
        try:
            store = self.store(target)
            receipt = store.read_installed(pack_id)
            if receipt is None:
                return RemoveResult(status=NOT_FOUND, pack_id=pack_id)
            decision = self.policy.evaluate_remove(pack_id, receipt.get("version"))
            if not decision.allowed:
                raise self._veto(decision)
            with self.lock(target, "remove"):
                return self._remove(store, receipt, target, force=force)
        except PackError as e:
            return RemoveResult(status=ERROR, pack_id=pack_id, error=_error_dict(e))
        except OSError as e:
            return RemoveResult(status=ERROR, pack_id=pack_id, error=_io_error_dict(e))

    def _remove(self, store: ReceiptStore, receipt: dict[str, Any], target: Path, *, force: bool) -> RemoveResult:
        pack_id = str(receipt["id"])
        result = RemoveResult(status=OK, pack_id=pack_id, version=receipt.get("version"))
        backup_dir = store.backup_dir(pack_id)
        hard_errors = 0
        seen: set[str] = set()

        for artifact in reversed(list(receipt.get("artifacts") or [])):
            if not isinstance(artifact, dict):
                continue
            raw_target = str(artifact.get("target", ""))
            if raw_target in seen:
                continue
            seen.add(raw_target)
            path = Path(raw_target)
            rel = safe_relpath(target, path)
            try:
                ensure_within_root(target, path)
            except ValueError:
                result.errors.append({"artifact": rel, "reason": "outside-target"})
                hard_errors += 1
                continue

            try:
                if artifact.get("type") == "directory":
                    if path.is_dir():
                        shutil.rmtree(path)
                        result.removed.append(rel)
                    else:
                        result.skipped.append({"artifact": rel, "reason": "missing"})
                    continue

                if not path.is_file():
                    result.skipped.append({"artifact": rel, "reason": "missing"})
                    continue
                if not force and sha256_file(path) != artifact.get("hash"):
                    logger.warning("not removing modified artifact %s", rel)
                    result.errors.append({"artifact": rel, "reason": "modified"})
                    continue

                orig = artifact.get("origHash")
                if isinstance(orig, str):
                    data = load_backup(backup_dir, orig)
                    if data is None:
                        result.errors.append({"artifact": rel, "reason": "backup-missing"})
                        continue
                    atomic_write_bytes(path, data)
                    result.restored.append(rel)
                else:
                    path.unlink()
                    prune_empty_dirs(path.parent, stop_at=target)
                    result.removed.append(rel)
            except OSError as e:
                result.errors.append({"artifact": rel, "reason": "io", "message": str(e)})
                hard_errors += 1

        if not result.errors:
            try:
                store.erase_pack_dir(pack_id)
                prune_empty_dirs(store.packs_dir, stop_at=target)
            except OSError as e:
                result.errors.append(
                    {"artifact": safe_relpath(target, store.pack_dir(pack_id)), "reason": "io", "message": str(e)}
                )

        if not result.errors:
            result.status = OK
        elif hard_errors and not (result.removed or result.restored):
            result.status = ERROR
        else:
            result.status = PARTIAL

        status = {OK: "success", PARTIAL: "partial"}.get(result.status, "failure")
        try:
            rec = store.build(
                pack_id=pack_id,
                version=str(receipt.get("version")),
                operation="remove",
                status=status,
                fingerprint=str(receipt.get("fingerprint", "")),
                manifest_hash=str((receipt.get("integrity") or {}).get("manifest", "")),
                mode=receipt.get("mode"),
                details={
                    "force": force,
                    "removed": list(result.removed),
                    "restored": list(result.restored),
                    "skipped": list(result.skipped),
                    "errors": list(result.errors),
                },
                artifacts=[],
            )
            store.write(rec, file_copy=False)
            result.receipt = rec
        except (SignError, OSError) as e:
            logger.warning("remove receipt for %s not written: %s", pack_id, e)
        logger.info("removed %s: %s", pack_id, result.status)
        return result

    def _rehash(self, target: Path, artifacts: list[dict[str, Any]]) -> tuple[list[str], list[str]]:
        files = [a for a in artifacts if isinstance(a, dict) and a.get("type") == "file"]

        def check(a: dict[str, Any]) -> tuple[str, str | None]:
            path = Path(str(a.get("target")))
            rel = safe_relpath(target, path)
            if not path.is_file():
                return rel, "missing"
            return rel, None if sha256_file(path) == a.get("hash") else "modified"

        workers = max(1, self.config.max_workers)
        if workers == 1 or len(files) < 2:
            outcomes = [check(a) for a in files]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="packwright-verify") as pool:
                outcomes = list(pool.map(check, files))
        modified = [rel for rel, state in outcomes if state == "modified"]
        missing = [rel for rel, state in outcomes if state == "missing"]
        return modified, missing

    def status(self, target: Path) -> StatusResult:
        target = Path(target).resolve()
        try:
            store = self.store(target)
            packs: list[dict[str, Any]] = []
            for r in store.installed():
                artifacts = list(r.get("artifacts") or [])
                modified, missing = self._rehash(target, artifacts)
                packs.append(
                    {
                        "id": r.get("id"),
                        "version": r.get("version"),
                        "operation": r.get("operation"),
                        "status": r.get("status"),
                        "timestamp": r.get("timestamp"),
                        "fingerprint": r.get("fingerprint"),
                        "mode": r.get("mode"),
                        "artifacts": len(artifacts),
                        "modified": modified,
                        "missing": missing,
                    }
                )
        except OSError as e:
            return StatusResult(status=ERROR, error={"kind": "OSError", "message": str(e), "exitCode": 1})
        return StatusResult(status=OK, packs=packs)

    def verify_receipt(self, receipt: Mapping[str, Any], target: Path) -> VerifyResult:
        return self.verifier_store(target).verify(receipt)

    def verify(self, pack_id: str, target: Path) -> EngineVerifyResult:
        target = Path(target).resolve()
        try:
            store = self.verifier_store(target)
            receipt = store.read_installed(pack_id)
            if receipt is None:
                return EngineVerifyResult(status=NOT_FOUND)
            checked = store.verify(receipt)
            modified, missing = self._rehash(target, list(receipt.get("artifacts") or []))
        except (PackError, OSError) as e:
            err = _error_dict(e) if isinstance(e, PackError) else {"kind": "OSError", "message": str(e), "exitCode": 1}
            return EngineVerifyResult(status=ERROR, error=err)
        if not checked.valid:
            status = INVALID
        elif modified or missing:
            status = DRIFTED
        else:
            status = VALID
        return EngineVerifyResult(
            status=status,
            valid=checked.valid,
            errors=list(checked.errors),
            modified=modified,
            missing=missing,
            receipt=receipt,
        )

    def list_available_updates(self, target: Path) -> list[dict[str, Any]]:
        registry = self.context.registry
        if registry is None:
            return []
        out: list[dict[str, Any]] = []
        for r in self.store(target).installed():
            pack_id = str(r.get("id"))
            installed = str(r.get("version"))
            try:
                latest = registry.latest_version(pack_id)
                kind = update_type(installed, latest) if latest else None
            except (OSError, ValueError) as e:
                logger.warning("cannot check updates for %s: %s", pack_id, e)
                continue
            if kind is not None:
                out.append({"id": pack_id, "installed": installed, "latest": latest, "updateType": kind})
        return out

    def assess_update_risks(self, previous: Mapping[str, Any], manifest: Manifest, plan: Plan) -> list[dict[str, Any]]:
        return assess_update_risks(previous, manifest, plan)
