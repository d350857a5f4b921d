from __future__ import annotations

from .base import JobLinkAdapter

# Global in-process registry: source_type -> adapter class
_REGISTRY: dict[str, type[JobLinkAdapter]] = {}
_DEFAULT_KIND = "other"


def register(cls: type[JobLinkAdapter]) -> type[JobLinkAdapter]:
    """
    Class decorator or direct call to register an adapter class.
    Requires cls.kind to be a non-empty string.
    """
    kind = getattr(cls, "kind", "") or ""
    if not isinstance(kind, str) or not kind.strip():
        raise ValueError(f"Cannot register adapter {cls!r}: missing/empty 'kind'.")
    key = kind.strip().lower()
    if key in _REGISTRY and _REGISTRY[key] is not cls:
        raise ValueError(f"Adapter kind {key!r} already registered to {_REGISTRY[key]!r}.")
    _REGISTRY[key] = cls
    return cls


def _load_builtin() -> None:
    # Importing the modules runs their @register decorators.
    from . import ashby, generic, greenhouse  # noqa: F401


def get(kind: str) -> type[JobLinkAdapter]:
    """
    Look up an adapter class by source type (case-insensitive).
    Unknown kinds resolve to the generic adapter.
    """
    _load_builtin()
    key = (kind or "").strip().lower()
    return _REGISTRY.get(key) or _REGISTRY[_DEFAULT_KIND]


def all_kinds() -> dict[str, type[JobLinkAdapter]]:
    """
    Return a shallow copy of the registry (useful for debugging/tests).
    """
    _load_builtin()
    return dict(_REGISTRY)
