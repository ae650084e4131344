"""Plan data: typed steps, impacts and conflicts.

Steps are a closed set of frozen dataclasses; each serializes with its tag
in a `"type"` field so a Plan round-trips through JSON.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Any, ClassVar, Union


# Target state relative to the installed receipt.
ABSENT = "absent"
CURRENT = "current"  # exists and matches the recorded artifact hash
DRIFTED = "drifted"  # recorded by the installed receipt but modified since
FOREIGN = "foreign"  # exists and is not owned by this pack


@dataclass(frozen=True)
class FileStep:
    type: ClassVar[str] = "file"
    src: str
    target: str
    path: str
    mode: str
    exists: bool
    size: int
    src_size: int
    state: str = ABSENT
    anchor: str | None = None


@dataclass(frozen=True)
class TemplateStep:
    type: ClassVar[str] = "template"
    src: str
    target: str
    path: str
    mode: str
    exists: bool
    size: int
    src_size: int
    executable: bool = False
    state: str = ABSENT
    anchor: str | None = None


@dataclass(frozen=True)
class JobStep:
    type: ClassVar[str] = "job"
    src: str
    target: str
    path: str
    exists: bool
    size: int
    src_size: int
    id: str | None = None
    state: str = ABSENT


@dataclass(frozen=True)
class EventStep:
    type: ClassVar[str] = "event"
    src: str
    target: str
    path: str
    exists: bool
    size: int
    src_size: int
    id: str | None = None
    state: str = ABSENT


@dataclass(frozen=True)
class TransformStep:
    type: ClassVar[str] = "transform"
    target: str
    path: str
    kind: str
    spec: Any
    exists: bool
    size: int
    anchor: str | None = None
    position: str = "after"
    state: str = ABSENT


@dataclass(frozen=True)
class DependenciesStep:
    type: ClassVar[str] = "dependencies"
    descriptor: str
    sections: dict[str, dict[str, str]]
    additions: dict[str, dict[str, str]] = field(default_factory=dict)


@dataclass(frozen=True)
class ScheduleStep:
    type: ClassVar[str] = "schedule"
    job: str
    cron: str


@dataclass(frozen=True)
class PostActionStep:
    type: ClassVar[str] = "post-action"
    action: str
    args: list[str]
    timeout: float = 30.0


Step = Union[
    FileStep, TemplateStep, JobStep, EventStep, TransformStep, DependenciesStep, ScheduleStep, PostActionStep
]

STEP_TYPES: dict[str, type] = {
    cls.type: cls
    for cls in (FileStep, TemplateStep, JobStep, EventStep, TransformStep, DependenciesStep, ScheduleStep, PostActionStep)
}

FILE_LIKE = (FileStep, TemplateStep, JobStep, EventStep)


def step_to_dict(step: Step) -> dict[str, Any]:
    d = asdict(step)
    d["type"] = step.type
    return d


def step_from_dict(d: dict[str, Any]) -> Step:
    t = d.get("type")
    cls = STEP_TYPES.get(t) if isinstance(t, str) else None
    if cls is None:
        raise ValueError(f"unknown step type: {t!r}")
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in d.items() if k in names})


def step_path(step: Step) -> str | None:
    return getattr(step, "path", None)


@dataclass(frozen=True)
class Conflict:
    kind: str
    step: int
    message: str
    path: str | None = None
    fatal: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "step": self.step, "path": self.path, "message": self.message, "fatal": self.fatal}


@dataclass(frozen=True)
class Impacts:
    creates: list[dict[str, Any]] = field(default_factory=list)
    modifies: list[dict[str, Any]] = field(default_factory=list)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    commands: list[dict[str, Any]] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)

    @property
    def estimated_changes(self) -> int:
        return len(self.creates) + len(self.modifies) + len(self.dependencies) + len(self.commands)

    @property
    def is_empty(self) -> bool:
        return self.estimated_changes == 0 and not self.conflicts

    def to_dict(self) -> dict[str, Any]:
        return {
            "creates": list(self.creates),
            "modifies": list(self.modifies),
            "conflicts": list(self.conflicts),
            "commands": list(self.commands),
            "dependencies": list(self.dependencies),
            "estimatedChanges": self.estimated_changes,
        }


@dataclass(frozen=True)
class Plan:
    pack_id: str
    pack_version: str
    fingerprint: str
    target_root: str
    mode: str
    inputs: dict[str, Any]
    steps: tuple[Step, ...]
    impacts: Impacts
    conflicts: tuple[Conflict, ...] = ()

    @property
    def fatal_conflicts(self) -> list[Conflict]:
        return [c for c in self.conflicts if c.fatal]

    def to_dict(self) -> dict[str, Any]:
        return {
            "packId": self.pack_id,
            "packVersion": self.pack_version,
            "fingerprint": self.fingerprint,
            "targetRoot": self.target_root,
            "mode": self.mode,
            "inputs": dict(self.inputs),
            "steps": [step_to_dict(s) for s in self.steps],
            "impacts": self.impacts.to_dict(),
            "conflicts": [c.to_dict() for c in self.conflicts],
        }

    @classmethod
    def from_dict(cls, d: dict[str, Any]) -> "Plan":
        imp = d.get("impacts") or {}
        return cls(
            pack_id=d["packId"],
            pack_version=d["packVersion"],
            fingerprint=d["fingerprint"],
            target_root=d["targetRoot"],
            mode=d["mode"],
            inputs=dict(d.get("inputs") or {}),
            steps=tuple(step_from_dict(s) for s in d.get("steps", [])),
            impacts=Impacts(
                creates=list(imp.get("creates", [])),
                modifies=list(imp.get("modifies", [])),
                conflicts=list(imp.get("conflicts", [])),
                commands=list(imp.get("commands", [])),
                dependencies=list(imp.get("dependencies", [])),
            ),
            conflicts=tuple(Conflict(**c) for c in d.get("conflicts", [])),
        )
