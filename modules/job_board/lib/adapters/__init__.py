from __future__ import annotations

from .base import JobLinkAdapter
from .registry import all_kinds, get, register

__all__ = ["JobLinkAdapter", "all_kinds", "get", "register"]
