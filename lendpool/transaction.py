from __future__ import annotations
from copy import deepcopy
from typing import Any, Callable, Dict, Iterable, Optional
import logging

logger = logging.getLogger(__name__)


class TransactionError(Exception):
    pass


class Transaction:
    """
    All-or-nothing scope over a set of stateful objects.

    On enter the ``__dict__`` of every object is deep-copied; objects in the
    transaction and ``shared`` objects keep their identity in the copy, so a
    pool's reference to its ledger (or to the protocol globals) survives a
    rollback. Objects exposing ``checkpoint()`` / ``restore(mark)`` (the
    append-only event log, the token ledger) are journaled through those
    instead of being copied. If the block raises, or ``post_check`` fails,
    every object is restored and the exception propagates.
    """
    def __init__(
        self,
        objects: Iterable[object],
        name: Optional[str] = None,
        shared: Iterable[object] = (),
        post_check: Optional[Callable[[], bool]] = None,
    ):
        seen: Dict[int, object] = {}
        for obj in objects:
            seen.setdefault(id(obj), obj)
        self.objects = list(seen.values())
        self.shared = list(shared)
        self.name = name or "tx"
        self.post_check = post_check
        self._snapshots: Dict[int, dict] = {}
        self._marks: Dict[int, Any] = {}

    def _memo(self) -> dict:
        memo = {id(obj): obj for obj in self.objects}
        memo.update({id(obj): obj for obj in self.shared})
        return memo

    @staticmethod
    def _journaled(obj: object) -> bool:
        return hasattr(obj, "checkpoint") and hasattr(obj, "restore")

    def __enter__(self):
        memo = self._memo()
        self._snapshots = {}
        self._marks = {}
        for obj in self.objects:
            if self._journaled(obj):
                self._marks[id(obj)] = obj.checkpoint()
            else:
                self._snapshots[id(obj)] = deepcopy(obj.__dict__, memo)
        return self

    def __exit__(self, exc_type, exc, tb):
        if exc_type is not None:
            logger.warning("rollback %s: %s", self.name, exc)
            self._rollback()
            return False
        if self.post_check and not self.post_check():
            self._rollback()
            raise TransactionError(f"Post-check failed for transaction {self.name}")
        self._snapshots = {}
        self._marks = {}
        return False

    def _rollback(self):
        for obj in self.objects:
            if id(obj) in self._marks:
                obj.restore(self._marks[id(obj)])
                continue
            snap = self._snapshots.get(id(obj))
            if snap is not None:
                obj.__dict__.clear()
                obj.__dict__.update(snap)
        self._snapshots = {}
        self._marks = {}
