"""Plan construction and impact analysis.

The Planner never mutates the target. It orders steps as: dependency
merges, files, templates, jobs, events, transforms, schedules, post-actions;
evaluates `when` conditions; and classifies every target against the
installed receipt (absent / current / drifted / foreign) to derive impacts
and conflicts.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Mapping

from packwright.core.hash import sha256_file
from packwright.core.jail import normalize_rel, resolve_rel_path
from packwright.pack.capabilities import Clock, SystemClock
from packwright.pack.detect import read_descriptor
from packwright.pack.errors import ModeError, PlanError
from packwright.pack.manifest import ASSETS_DIR, EVENTS_DIR, JOBS_DIR, TEMPLATES_DIR, Manifest
from packwright.pack.steps import (
    ABSENT,
    CURRENT,
    DRIFTED,
    FOREIGN,
    Conflict,
    DependenciesStep,
    EventStep,
    FileStep,
    Impacts,
    JobStep,
    Plan,
    PostActionStep,
    ScheduleStep,
    Step,
    TemplateStep,
    TransformStep,
)
from packwright.pack.when import evaluate_when


logger = logging.getLogger(__name__)


READY = "READY"
CONFLICTS = "CONFLICTS"
ERROR = "ERROR"

_RISK_BY_MODE = {"write": "overwrite", "merge": "merge"}


@dataclass(frozen=True)
class PlanResult:
    plan: Plan
    status: str
    warnings: list[str] = field(default_factory=list)

    @property
    def impacts(self) -> Impacts:
        return self.plan.impacts

    @property
    def conflicts(self) -> tuple[Conflict, ...]:
        return self.plan.conflicts

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "plan": self.plan.to_dict(),
            "impacts": self.plan.impacts.to_dict(),
            "conflicts": [c.to_dict() for c in self.plan.conflicts],
            "warnings": list(self.warnings),
        }


def installed_artifact_hashes(receipt: Mapping[str, Any] | None) -> dict[str, str]:
    """Map absolute target path -> recorded hash for file artifacts of a receipt."""

    out: dict[str, str] = {}
    if not receipt:
        return out
    for a in receipt.get("artifacts") or []:
        if isinstance(a, dict) and a.get("type") == "file" and isinstance(a.get("hash"), str):
            out[str(a.get("target"))] = a["hash"]
    return out


def resolve_source(pack_root: Path, subdir: str, src: str) -> Path:
    """Locate an asset under its conventional subdirectory, falling back to the pack root."""

    for base in (pack_root / subdir, pack_root):
        try:
            p = resolve_rel_path(base, src, must_exist=False)
        except ValueError as e:
            raise PlanError(f"Invalid source path {src!r}: {e}", reason="read-io", src=src) from e
        if p.is_file():
            return p
    raise PlanError(
        f"Pack source not found: {subdir}/{src}",
        reason="read-io",
        src=src,
        searched=[str(pack_root / subdir / src), str(pack_root / src)],
    )


class _Builder:
    """Accumulates steps, impacts and conflicts for one plan."""

    def __init__(
        self,
        *,
        target_root: Path,
        owned: dict[str, str],
        unchanged_pack: bool,
        conflict_policy: str,
        now: float,
        recent_seconds: float,
    ) -> None:
        self.target_root = target_root
        self.owned = owned
        self.unchanged_pack = unchanged_pack
        self.conflict_policy = conflict_policy
        self.now = now
        self.recent_seconds = recent_seconds
        self.steps: list[Step] = []
        self.creates: list[dict[str, Any]] = []
        self.modifies: list[dict[str, Any]] = []
        self.impact_conflicts: list[dict[str, Any]] = []
        self.commands: list[dict[str, Any]] = []
        self.dependencies: list[str] = []
        self.conflicts: list[Conflict] = []
        self._impacted: set[str] = set()
        self._planned: set[str] = set()

    def target_path(self, rel: str) -> Path:
        try:
            return resolve_rel_path(self.target_root, rel, must_exist=False, forbid_symlinks=False)
        except ValueError as e:
            raise PlanError(f"Invalid target path {rel!r}: {e}", reason="read-io", target=rel) from e

    def classify(self, path: Path) -> tuple[bool, int, str]:
        try:
            if not path.exists():
                return False, 0, ABSENT
            if path.is_dir():
                raise PlanError(f"Target is a directory: {path}", reason="read-io", target=str(path))
            size = path.stat().st_size
            current = sha256_file(path)
        except OSError as e:
            raise PlanError(f"Cannot inspect target {path}: {e}", reason="read-io", target=str(path)) from e
        recorded = self.owned.get(str(path))
        if recorded is None:
            return True, size, FOREIGN
        return True, size, CURRENT if recorded == current else DRIFTED

    def conflict(self, kind: str, message: str, *, path: str | None, fatal: bool) -> None:
        idx = len(self.steps)
        self.conflicts.append(Conflict(kind=kind, step=idx, message=message, path=path, fatal=fatal))
        self.impact_conflicts.append({"step": idx, "reason": kind, "path": path})

    def _recently_modified(self, path: Path) -> bool:
        try:
            return (self.now - path.stat().st_mtime) < self.recent_seconds
        except OSError:
            return False

    def add_file_like(self, step: Step, *, rel: str, path: Path, mode: str, state: str, src_size: int) -> None:
        kind = step.type
        effective = mode
        if state == DRIFTED:
            self.conflict(
                "user-modified",
                f"{rel} was modified after installation",
                path=rel,
                fatal=self.conflict_policy == "error",
            )
            if mode != "skip":
                effective = {"skip": "skip", "overwrite": "write", "merge": "merge"}.get(self.conflict_policy, "skip")
        if mode == "write" and state in (DRIFTED, FOREIGN) and self._recently_modified(path):
            self.conflict(
                "recent-modification",
                f"{rel} was modified within the last {int(self.recent_seconds // 3600)}h",
                path=rel,
                fatal=self.conflict_policy == "error",
            )

        self.steps.append(step)
        self._planned.add(rel)
        if rel in self._impacted:
            return
        if state == ABSENT:
            self.creates.append({"path": rel, "type": kind, "size": src_size})
            self._impacted.add(rel)
            return
        if state == CURRENT and self.unchanged_pack:
            return
        risk = _RISK_BY_MODE.get(effective)
        if risk is not None:
            self.modifies.append({"path": rel, "type": kind, "risk": risk, "size": src_size})
            self._impacted.add(rel)

    def add_transform(self, step: TransformStep) -> None:
        rel = step.target
        if not step.exists and rel not in self._planned:
            self.conflict("missing-target", f"Transform target does not exist: {rel}", path=rel, fatal=True)
            self.steps.append(step)
            return
        self.steps.append(step)
        if rel in self._impacted:
            return
        if step.state == CURRENT and self.unchanged_pack:
            return
        self.modifies.append({"path": rel, "type": "transform", "risk": "transform", "size": step.size})
        self._impacted.add(rel)

    def impacts(self) -> Impacts:
        return Impacts(
            creates=self.creates,
            modifies=self.modifies,
            conflicts=self.impact_conflicts,
            commands=self.commands,
            dependencies=self.dependencies,
        )


class Planner:
    def __init__(
        self,
        *,
        descriptor: str = "package.json",
        clock: Clock | None = None,
        recent_modification_seconds: float = 86400.0,
        post_action_timeout: float = 30.0,
    ) -> None:
        self.descriptor = descriptor
        self.clock = clock if clock is not None else SystemClock()
        self.recent_modification_seconds = recent_modification_seconds
        self.post_action_timeout = post_action_timeout

    def plan(
        self,
        manifest: Manifest,
        target: Path,
        *,
        mode: str,
        inputs: Mapping[str, Any],
        installed: Mapping[str, Any] | None = None,
    ) -> PlanResult:
        if mode not in manifest.modes:
            raise ModeError(
                f"Pack {manifest.id} does not support mode {mode!r} (supports {manifest.modes})",
                reason="unsupported",
                detected=mode,
                allowed=list(manifest.modes),
            )

        target_root = Path(target).resolve()
        fingerprint = manifest.fingerprint()
        unchanged_pack = bool(
            installed
            and installed.get("fingerprint") == fingerprint
            and installed.get("status") == "success"
        )
        b = _Builder(
            target_root=target_root,
            owned=installed_artifact_hashes(installed),
            unchanged_pack=unchanged_pack,
            conflict_policy=manifest.conflict_policy,
            now=self.clock.now().timestamp(),
            recent_seconds=self.recent_modification_seconds,
        )

        def applies(item: Mapping[str, Any]) -> bool:
            return evaluate_when(item.get("when"), mode=mode, inputs=inputs)

        self._plan_dependencies(manifest, b, target_root)

        provides = manifest.provides
        for section, subdir, cls in (("files", ASSETS_DIR, FileStep), ("templates", TEMPLATES_DIR, TemplateStep)):
            for item in provides[section]:
                if not applies(item):
                    continue
                src = resolve_source(manifest.root, subdir, item["src"])
                rel = item["target"]
                path = b.target_path(rel)
                exists, size, state = b.classify(path)
                src_size = src.stat().st_size
                kw: dict[str, Any] = dict(
                    src=str(src),
                    target=rel,
                    path=str(path),
                    mode=item["mode"],
                    exists=exists,
                    size=size,
                    src_size=src_size,
                    state=state,
                    anchor=item.get("anchor"),
                )
                if cls is TemplateStep:
                    kw["executable"] = bool(item.get("executable", False))
                b.add_file_like(cls(**kw), rel=rel, path=path, mode=item["mode"], state=state, src_size=src_size)

        for section, subdir, cls in (("jobs", JOBS_DIR, JobStep), ("events", EVENTS_DIR, EventStep)):
            for item in provides[section]:
                if not applies(item):
                    continue
                src = resolve_source(manifest.root, subdir, item["src"])
                item_id = item.get("id")
                name = f"{item_id}{PurePosixPath(item['src']).suffix}" if item_id else item["src"]
                rel = normalize_rel(f"{item['targetDir']}/{name}", allow_backslashes=False)
                path = b.target_path(rel)
                exists, size, state = b.classify(path)
                src_size = src.stat().st_size
                step = cls(
                    src=str(src),
                    target=rel,
                    path=str(path),
                    exists=exists,
                    size=size,
                    src_size=src_size,
                    id=item_id,
                    state=state,
                )
                b.add_file_like(step, rel=rel, path=path, mode="write", state=state, src_size=src_size)

        for item in provides["transforms"]:
            if not applies(item):
                continue
            rel = item["target"]
            path = b.target_path(rel)
            exists, size, state = b.classify(path)
            b.add_transform(
                TransformStep(
                    target=rel,
                    path=str(path),
                    kind=item["kind"],
                    spec=item["spec"],
                    exists=exists,
                    size=size,
                    anchor=item.get("anchor"),
                    position=item.get("position", "after"),
                    state=state,
                )
            )

        for item in provides["schedules"]:
            if applies(item):
                b.steps.append(ScheduleStep(job=item["job"], cron=item["cron"]))

        for item in manifest.post_install:
            if not applies(item):
                continue
            step = PostActionStep(
                action=item["action"],
                args=list(item.get("args", [])),
                timeout=float(item.get("timeout", self.post_action_timeout)),
            )
            b.steps.append(step)
            if not unchanged_pack:
                b.commands.append(
                    {"action": step.action, "args": list(step.args), "risk": "medium" if step.action == "run" else "high"}
                )

        plan = Plan(
            pack_id=manifest.id,
            pack_version=manifest.version,
            fingerprint=fingerprint,
            target_root=str(target_root),
            mode=mode,
            inputs=dict(inputs),
            steps=tuple(b.steps),
            impacts=b.impacts(),
            conflicts=tuple(b.conflicts),
        )
        if plan.fatal_conflicts:
            status = ERROR
        elif plan.conflicts:
            status = CONFLICTS
        else:
            status = READY
        logger.debug(
            "planned %s@%s: %d steps, %d changes, status=%s",
            manifest.id,
            manifest.version,
            len(plan.steps),
            plan.impacts.estimated_changes,
            status,
        )
        return PlanResult(plan=plan, status=status)

    def _plan_dependencies(self, manifest: Manifest, b: _Builder, target_root: Path) -> None:
        if not manifest.dependencies:
            return
        path = target_root / self.descriptor
        existing: dict[str, Any] = {}
        if path.exists():
            desc = read_descriptor(target_root, self.descriptor)
            if desc is None:
                raise PlanError(
                    f"Project descriptor is not a readable JSON object: {path}",
                    reason="read-io",
                    descriptor=str(path),
                )
            existing = desc

        additions: dict[str, dict[str, str]] = {}
        for section, entries in manifest.dependencies.items():
            current = existing.get(section)
            current = current if isinstance(current, dict) else {}
            for name, version in entries.items():
                have = current.get(name)
                if have is None:
                    additions.setdefault(section, {})[name] = version
                    b.dependencies.append(name)
                elif have != version:
                    b.conflict(
                        "dependency-version",
                        f"{section}.{name}: installed {have}, pack wants {version}",
                        path=self.descriptor,
                        fatal=b.conflict_policy == "error",
                    )
        b.steps.append(
            DependenciesStep(descriptor=self.descriptor, sections=manifest.dependencies, additions=additions)
        )
