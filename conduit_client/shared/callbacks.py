"""Helpers for the callback lists used throughout the client."""
from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

logger = logging.getLogger(__name__)


def remover(callbacks: list, cb: Callable) -> Callable[[], None]:
    """Return a callable that removes *cb* from *callbacks* (idempotent)."""
    def remove() -> None:
        if cb in callbacks:
            callbacks.remove(cb)
    return remove


def fan_out(callbacks: Iterable[Callable], *args: Any, what: str = "callback") -> None:
    """Call every callback with *args*; a raising callback does not stop the rest."""
    for cb in list(callbacks):
        try:
            cb(*args)
        except Exception:
            logger.exception("%s failed", what)
