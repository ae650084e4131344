"""packwright: declarative pack lifecycle engine (plan, apply, update, remove, receipts).

The public entry point is `packwright.pack.manager.Engine`.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version


ENGINE_NAME = "packwright"


def engine_version() -> str:
    try:
        return version("packwright")
    except PackageNotFoundError:
        return "0.0.0"


def __getattr__(name: str):
    if name == "__version__":
        return engine_version()
    raise AttributeError(name)
