from __future__ import annotations
import threading
from typing import List, Optional


class CancelToken:
    """
    Cooperative cancellation shared between the orchestrator and running invokers.
    Cancelling a token cancels every child token derived from it.
    """

    def __init__(self, parent: Optional["CancelToken"] = None):
        self._event = threading.Event()
        self._children: List["CancelToken"] = []
        self._lock = threading.Lock()
        self.reason: Optional[str] = None
        self._parent = parent
        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken") -> None:
        with self._lock:
            self._children.append(child)
            cancelled = self._event.is_set()
        if cancelled:
            child.cancel(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def detach(self) -> None:
        """Stop following the parent once this token's work is over."""
        parent, self._parent = self._parent, None
        if parent is not None:
            with parent._lock:
                if self in parent._children:
                    parent._children.remove(self)

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for c in children:
            c.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)
