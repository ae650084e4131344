"""Pack lifecycle: manifests, planning, application, policy and receipts.

Dependency direction rules:
- packwright.pack may import packwright.core
- only packwright.pack.manager composes the other modules into an Engine
"""

from packwright.pack.applier import Applier, ApplyResult
from packwright.pack.capabilities import (
	CancelToken,
	FixedClock,
	Jinja2Renderer,
	NonInteractivePrompt,
	StaticRegistry,
	SubprocessExec,
)
from packwright.pack.errors import PackError
from packwright.pack.manager import (
	Engine,
	EngineContext,
	EngineVerifyResult,
	PlanOutcome,
	RemoveResult,
	StatusResult,
	UpdateResult,
	assess_update_risks,
)
from packwright.pack.manifest import Manifest, load_manifest
from packwright.pack.policy import Policy, PolicyConfig
from packwright.pack.receipt import ReceiptStore

__all__ = [
	"Applier",
	"ApplyResult",
	"CancelToken",
	"Engine",
	"EngineContext",
	"EngineVerifyResult",
	"FixedClock",
	"Jinja2Renderer",
	"Manifest",
	"NonInteractivePrompt",
	"PackError",
	"PlanOutcome",
	"Policy",
	"PolicyConfig",
	"ReceiptStore",
	"RemoveResult",
	"StaticRegistry",
	"StatusResult",
	"SubprocessExec",
	"UpdateResult",
	"assess_update_risks",
	"load_manifest",
]
