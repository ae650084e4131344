"""Plan execution.

Steps run in plan order. File-like steps (files, templates, jobs, events)
between two barrier steps may run on a bounded thread pool; steps sharing a
target always run in order on one worker. Every file written is recorded as
an artifact with the SHA-256 of its bytes, and one receipt is written at the
end of the operation.
"""

from __future__ import annotations

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

from packwright.core.hash import sha256_bytes
from packwright.core.jail import safe_relpath
from packwright.core.time import format_utc_z
from packwright.pack.capabilities import (
    CancelToken,
    Clock,
    ExecCapability,
    Jinja2Renderer,
    SystemClock,
    TemplateRenderer,
    slugify,
)
from packwright.pack.errors import ApplyError, ConflictError, PackError
from packwright.pack.fileops import atomic_write_bytes, store_backup
from packwright.pack.manifest import Manifest
from packwright.pack.planner import installed_artifact_hashes
from packwright.pack.policy import Policy
from packwright.pack.receipt import ReceiptStore
from packwright.pack.steps import (
    DRIFTED,
    FILE_LIKE,
    DependenciesStep,
    Plan,
    PostActionStep,
    ScheduleStep,
    Step,
    TemplateStep,
    TransformStep,
)
from packwright.pack.transforms import apply_transform, merge_content


logger = logging.getLogger(__name__)


SUCCESS = "success"
PARTIAL = "partial"
FAILURE = "failure"
NO_OP = "no-op"


@dataclass
class ApplyResult:
    status: str
    applied: list[dict[str, Any]] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    mode: str | None = None
    receipt: dict[str, Any] | None = None
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    error: dict[str, Any] | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status in (SUCCESS, NO_OP)

    def to_dict(self) -> dict[str, Any]:
        out = {
            "status": self.status,
            "applied": list(self.applied),
            "errors": list(self.errors),
            "inputs": dict(self.inputs),
            "mode": self.mode,
            "receipt": self.receipt,
        }
        if self.error is not None:
            out["error"] = self.error
        if self.warnings:
            out["warnings"] = list(self.warnings)
        return out


@dataclass
class _Outcome:
    index: int
    applied: dict[str, Any] | None = None
    artifact: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    schedule: dict[str, Any] | None = None
    dependencies: dict[str, dict[str, str]] | None = None
    abort: bool = False


def raise_fatal_conflicts(plan: Plan) -> None:
    fatal = plan.fatal_conflicts
    if fatal:
        c = fatal[0]
        raise ConflictError(c.message, reason=c.kind, step=c.step, path=c.path)


def _error_entry(index: int, step: Step, err: PackError) -> dict[str, Any]:
    out = {"step": index, "type": step.type, "target": getattr(step, "target", None)}
    out.update(err.to_dict())
    return out


class Applier:
    def __init__(
        self,
        *,
        store: ReceiptStore,
        renderer: TemplateRenderer | None = None,
        exec_capability: ExecCapability | None = None,
        policy: Policy | None = None,
        clock: Clock | None = None,
        continue_on_error: bool = False,
        max_workers: int = 1,
    ) -> None:
        self.store = store
        self.renderer = renderer if renderer is not None else Jinja2Renderer()
        self.exec_capability = exec_capability
        self.policy = policy if policy is not None else Policy()
        self.clock = clock if clock is not None else SystemClock()
        self.continue_on_error = continue_on_error
        self.max_workers = max(1, int(max_workers))

    # public

    def already_applied(self, manifest: Manifest) -> dict[str, Any] | None:
        """The installed receipt when it records a successful apply of this exact fingerprint."""

        installed = self.store.read_installed(manifest.id)
        if installed and installed.get("fingerprint") == manifest.fingerprint() and installed.get("status") == SUCCESS:
            return installed
        return None

    def apply(
        self,
        manifest: Manifest,
        plan: Plan,
        *,
        operation: str = "install",
        cancel: CancelToken | None = None,
        extra_details: Mapping[str, Any] | None = None,
    ) -> ApplyResult:
        done = self.already_applied(manifest)
        if done is not None:
            logger.info("%s@%s already applied; nothing to do", manifest.id, manifest.version)
            return ApplyResult(status=NO_OP, inputs=dict(plan.inputs), mode=plan.mode, receipt=done)

        installed = self.store.read_installed(manifest.id)
        fingerprint = manifest.fingerprint()

        raise_fatal_conflicts(plan)

        run = _Run(self, manifest, plan, installed, cancel)
        run.execute()

        if not run.errors:
            status = SUCCESS
        elif run.applied:
            status = PARTIAL
        else:
            status = FAILURE

        details: dict[str, Any] = {
            "inputs": dict(plan.inputs),
            "applied": len(run.applied),
            "errors": list(run.errors),
            "schedules": list(run.schedules),
            "dependencies": dict(run.dependencies),
            "conflicts": [c.to_dict() for c in plan.conflicts],
        }
        details.update(extra_details or {})

        artifacts = run.final_artifacts()
        receipt = self.store.build(
            pack_id=manifest.id,
            version=manifest.version,
            operation=operation,
            status=status,
            fingerprint=fingerprint,
            manifest_hash=manifest.manifest_hash(),
            mode=plan.mode,
            details=details,
            artifacts=artifacts,
            extra={"previousVersion": details["previousVersion"]} if "previousVersion" in details else None,
        )
        error: dict[str, Any] | None = None
        try:
            self.store.write(receipt)
        except OSError as e:
            # the files are already in place; report them along with the failed write
            logger.error("receipt for %s@%s not written: %s", manifest.id, manifest.version, e)
            err = ApplyError(f"Receipt not written: {e}", reason="io", cause=type(e).__name__)
            error = err.to_dict()
            error["exitCode"] = err.exit_code
        return ApplyResult(
            status=status,
            applied=run.applied,
            errors=run.errors,
            inputs=dict(plan.inputs),
            mode=plan.mode,
            receipt=receipt,
            artifacts=artifacts,
            error=error,
        )

    # helpers shared with _Run

    def template_variables(self, manifest: Manifest, plan: Plan) -> dict[str, Any]:
        now = self.clock.now()

        def date(fmt: str = "%Y-%m-%d") -> str:
            return now.strftime(fmt)

        inputs = dict(plan.inputs)
        variables: dict[str, Any] = {k: v for k, v in inputs.items() if v is not None}
        variables.update(
            {
                "inputs": inputs,
                "mode": plan.mode,
                "pack": {"id": manifest.id, "version": manifest.version},
                "now": format_utc_z(now),
                "date": date,
                "slug": slugify,
            }
        )
        return variables


class _Run:
    """Mutable state of one apply operation."""

    def __init__(
        self,
        applier: Applier,
        manifest: Manifest,
        plan: Plan,
        installed: Mapping[str, Any] | None,
        cancel: CancelToken | None,
    ) -> None:
        self.a = applier
        self.manifest = manifest
        self.plan = plan
        self.cancel = cancel
        self.target_root = Path(plan.target_root)
        self.backup_dir = applier.store.backup_dir(manifest.id)
        self.previous_artifacts: list[dict[str, Any]] = [
            dict(x) for x in (installed or {}).get("artifacts") or [] if isinstance(x, dict)
        ]
        self.previous_by_target = {str(x.get("target")): x for x in self.previous_artifacts}
        self.owned = installed_artifact_hashes(installed)
        self.variables = applier.template_variables(manifest, plan)

        self.applied: list[dict[str, Any]] = []
        self.errors: list[dict[str, Any]] = []
        self.schedules: list[dict[str, Any]] = []
        self.dependencies: dict[str, dict[str, str]] = {}
        self.artifacts: dict[str, dict[str, Any]] = {}

    # orchestration

    def execute(self) -> None:
        steps = list(enumerate(self.plan.steps))
        i = 0
        while i < len(steps):
            idx, step = steps[i]
            if isinstance(step, FILE_LIKE):
                j = i
                while j < len(steps) and isinstance(steps[j][1], FILE_LIKE):
                    j += 1
                outcomes = self._run_batch(steps[i:j])
                i = j
            else:
                outcomes = [self._guarded(idx, step, written=set())]
                i += 1
            if self._merge(outcomes):
                return

    def _cancelled(self) -> bool:
        return self.cancel is not None and self.cancel.cancelled

    def _run_batch(self, batch: list[tuple[int, Step]]) -> list[_Outcome]:
        groups: dict[str, list[tuple[int, Step]]] = {}
        for idx, step in batch:
            groups.setdefault(step.path, []).append((idx, step))

        def run_group(items: list[tuple[int, Step]]) -> list[_Outcome]:
            written: set[str] = set()
            out: list[_Outcome] = []
            for idx, step in items:
                o = self._guarded(idx, step, written=written)
                out.append(o)
                if o.error is not None and not self.a.continue_on_error:
                    break
            return out

        if self.a.max_workers == 1 or len(groups) == 1:
            outcomes: list[_Outcome] = []
            for items in groups.values():
                group_out = run_group(items)
                outcomes.extend(group_out)
                if any(o.error is not None for o in group_out) and not self.a.continue_on_error:
                    break
        else:
            with ThreadPoolExecutor(max_workers=self.a.max_workers, thread_name_prefix="packwright-apply") as pool:
                futures = [pool.submit(run_group, items) for items in groups.values()]
                outcomes = [o for f in futures for o in f.result()]
        outcomes.sort(key=lambda o: o.index)
        return outcomes

    def _merge(self, outcomes: list[_Outcome]) -> bool:
        """Fold outcomes in step order; True when the run must stop."""

        stop = False
        for o in outcomes:
            if o.applied is not None:
                self.applied.append(o.applied)
            if o.artifact is not None:
                target = o.artifact["target"]
                if target in self.artifacts and o.artifact.get("createdBy") == "transform":
                    self.artifacts[target]["hash"] = o.artifact["hash"]
                else:
                    self.artifacts.pop(target, None)
                    self.artifacts[target] = o.artifact
            if o.schedule is not None:
                self.schedules.append(o.schedule)
            if o.dependencies:
                for section, names in o.dependencies.items():
                    self.dependencies.setdefault(section, {}).update(names)
            if o.error is not None:
                self.errors.append(o.error)
                if o.abort or not self.a.continue_on_error:
                    stop = True
        return stop

    def _guarded(self, idx: int, step: Step, *, written: set[str]) -> _Outcome:
        if self._cancelled():
            err = ApplyError("Operation cancelled before step", reason="cancelled")
            return _Outcome(index=idx, error=_error_entry(idx, step, err), abort=True)
        try:
            return self._execute(idx, step, written=written)
        except PackError as e:
            logger.warning("step %d (%s) failed: %s", idx, step.type, e.message)
            return _Outcome(index=idx, error=_error_entry(idx, step, e), abort=isinstance(step, DependenciesStep))
        except (OSError, ValueError, UnicodeDecodeError) as e:
            logger.warning("step %d (%s) failed: %s", idx, step.type, e)
            err = ApplyError(str(e), reason="io" if isinstance(e, OSError) else "content", cause=type(e).__name__)
            return _Outcome(index=idx, error=_error_entry(idx, step, err), abort=isinstance(step, DependenciesStep))

    def _execute(self, idx: int, step: Step, *, written: set[str]) -> _Outcome:
        if isinstance(step, FILE_LIKE):
            return self._file_like(idx, step, written=written)
        if isinstance(step, TransformStep):
            return self._transform(idx, step)
        if isinstance(step, DependenciesStep):
            return self._dependencies(idx, step)
        if isinstance(step, ScheduleStep):
            entry = {"job": step.job, "cron": step.cron}
            return _Outcome(
                index=idx,
                applied={"step": idx, "type": step.type, "job": step.job, "cron": step.cron, "action": "registered"},
                schedule=entry,
            )
        if isinstance(step, PostActionStep):
            return self._post_action(idx, step)
        raise ApplyError(f"Unknown step type: {type(step).__name__}", reason="unknown-step")

    # artifacts

    def _artifact(self, path: Path, digest: str, *, created_by: str) -> dict[str, Any]:
        return {"type": "file", "target": str(path), "hash": digest, "createdBy": created_by}

    def _preimage(self, path: Path, existing: bytes, *, written: set[str]) -> dict[str, Any]:
        """origSize/origHash for a file this pack is about to change for the first time."""

        key = str(path)
        if key in written or key in self.artifacts:
            return {}
        prev = self.previous_by_target.get(key)
        if prev is not None:
            return {k: prev[k] for k in ("origSize", "origHash") if k in prev}
        if key in self.owned:
            return {}
        return {"origSize": len(existing), "origHash": store_backup(self.backup_dir, existing)}

    # step kinds

    def _file_like(self, idx: int, step: Step, *, written: set[str]) -> _Outcome:
        path = Path(step.path)
        src = Path(step.src)
        raw = src.read_bytes()
        if isinstance(step, TemplateStep):
            try:
                content = self.a.renderer.render(raw.decode("utf-8"), self.variables)
            except ValueError as e:
                raise ApplyError(f"Template {step.target} failed to render: {e}", reason="render") from e
        else:
            content = raw

        mode = getattr(step, "mode", "write")
        if step.state == DRIFTED and mode != "skip":
            policy = self.manifest.conflict_policy
            if policy == "error":
                raise ConflictError(
                    f"{step.target} was modified after installation", reason="user-modified", step=idx, path=step.target
                )
            mode = {"skip": "skip", "overwrite": "write", "merge": "merge"}[policy]

        exists = path.is_file()
        if path.exists() and not exists:
            raise ApplyError(f"Target is not a regular file: {step.target}", reason="not-a-file")

        applied = {"step": idx, "type": step.type, "target": step.target}
        if exists and mode == "skip":
            applied["action"] = "skipped"
            return _Outcome(index=idx, applied=applied)

        existing = path.read_bytes() if exists else None
        if existing is not None and mode == "merge":
            new = merge_content(path.name, existing, content, anchor=getattr(step, "anchor", None))
            action = "merged"
        else:
            new = content
            action = "overwritten" if exists else "created"

        # a file that predates the pack keeps its pre-image even when left untouched
        extra = self._preimage(path, existing, written=written) if existing is not None else {}
        executable = bool(getattr(step, "executable", False))
        if existing is not None and new == existing and not executable:
            digest = sha256_bytes(new)
            action = "unchanged"
        else:
            digest = atomic_write_bytes(path, new, executable=executable)
        written.add(str(path))

        applied["action"] = action
        artifact = self._artifact(path, digest, created_by=step.type)
        if str(path) in self.previous_by_target and not extra:
            prev = self.previous_by_target[str(path)]
            extra = {k: prev[k] for k in ("origSize", "origHash") if k in prev}
        artifact.update(extra)
        logger.debug("%s %s (%s)", action, safe_relpath(self.target_root, path), step.type)
        return _Outcome(index=idx, applied=applied, artifact=artifact)

    def _transform(self, idx: int, step: TransformStep) -> _Outcome:
        path = Path(step.path)
        if not path.is_file():
            raise ApplyError(f"Transform target does not exist: {step.target}", reason="missing-target")
        existing = path.read_bytes()
        try:
            new = apply_transform(step.kind, existing, step.spec, anchor=step.anchor, position=step.position)
        except ValueError as e:
            raise ApplyError(f"Transform {step.kind} on {step.target} failed: {e}", reason="transform") from e

        applied = {"step": idx, "type": step.type, "target": step.target, "kind": step.kind}
        extra = self._preimage(path, existing, written=set())
        if new == existing:
            digest = sha256_bytes(new)
            applied["action"] = "unchanged"
        else:
            digest = atomic_write_bytes(path, new)
            applied["action"] = "transformed"

        artifact = self._artifact(path, digest, created_by="transform")
        if not extra and str(path) in self.previous_by_target:
            prev = self.previous_by_target[str(path)]
            extra = {k: prev[k] for k in ("origSize", "origHash") if k in prev}
        artifact.update(extra)
        return _Outcome(index=idx, applied=applied, artifact=artifact)

    def _dependencies(self, idx: int, step: DependenciesStep) -> _Outcome:
        path = self.target_root / step.descriptor
        applied = {"step": idx, "type": step.type, "target": step.descriptor}
        if not step.additions:
            applied["action"] = "unchanged"
            return _Outcome(index=idx, applied=applied)

        if path.exists():
            try:
                desc = json.loads(path.read_text(encoding="utf-8", errors="strict"))
            except (OSError, ValueError) as e:
                raise ApplyError(f"Cannot read project descriptor {path}: {e}", reason="descriptor") from e
            if not isinstance(desc, dict):
                raise ApplyError(f"Project descriptor is not a JSON object: {path}", reason="descriptor")
        else:
            desc = {}

        added: dict[str, dict[str, str]] = {}
        for section, names in step.additions.items():
            current = desc.get(section)
            if current is None:
                current = {}
            if not isinstance(current, dict):
                raise ApplyError(f"Descriptor section {section} is not an object", reason="descriptor")
            for name, version in names.items():
                if name not in current:
                    current[name] = version
                    added.setdefault(section, {})[name] = version
            desc[section] = current

        if added:
            atomic_write_bytes(path, (json.dumps(desc, indent=2, ensure_ascii=False) + "\n").encode("utf-8"))
        applied["action"] = "merged" if added else "unchanged"
        applied["added"] = added
        return _Outcome(index=idx, applied=applied, dependencies=added)

    def _post_action(self, idx: int, step: PostActionStep) -> _Outcome:
        if step.action not in self.a.policy.config.allowed_actions:
            raise ApplyError(f"Post-install action not allowed: {step.action}", reason="policy", action=step.action)
        if step.action != "run":
            raise ApplyError(f"Unsupported post-install action: {step.action}", reason="unsupported", action=step.action)
        violation = self.a.policy.command_violation(list(step.args))
        if violation is not None:
            raise ApplyError(violation, reason="policy", action=step.action)
        if self.a.exec_capability is None:
            raise ApplyError("No exec capability configured for post-install actions", reason="no-exec")

        outcome = self.a.exec_capability.run(list(step.args), cwd=self.target_root, timeout=step.timeout)
        if outcome.returncode != 0:
            raise ApplyError(
                f"Command exited with status {outcome.returncode}: {' '.join(step.args)}",
                reason="exit-status",
                returncode=outcome.returncode,
                stderr=outcome.stderr[-2000:],
            )
        return _Outcome(
            index=idx,
            applied={"step": idx, "type": step.type, "action": "ran", "args": list(step.args), "returncode": 0},
        )

    # result

    def final_artifacts(self) -> list[dict[str, Any]]:
        """Carried-over artifacts first (written earlier), then this run's in write order."""

        carried = [a for a in self.previous_artifacts if str(a.get("target")) not in self.artifacts]
        return carried + list(self.artifacts.values())
