from __future__ import annotations

from . import claude

__all__ = ["claude"]
