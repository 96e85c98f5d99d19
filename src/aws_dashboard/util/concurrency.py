from __future__ import annotations

import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, Iterator, Optional, Sequence, Tuple, TypeVar

from .errors import OperationCancelled

T = TypeVar("T")
R = TypeVar("R")

Outcome = Tuple[T, Optional[R], Optional[BaseException]]


class CancelToken:
    """
    Cooperative cancellation signal with an optional deadline.

    A child token is cancelled when its parent is, but cancelling a child
    never affects the parent.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        parent: Optional["CancelToken"] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = clock() + timeout if timeout is not None else None
        self._parent = parent
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "operation cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            return True
        return self._parent is not None and self._parent.cancelled

    @property
    def reason(self) -> str:
        if self._event.is_set():
            return self._reason or "operation cancelled"
        if self._deadline is not None and self._clock() >= self._deadline:
            return "deadline exceeded"
        if self._parent is not None and self._parent.cancelled:
            return self._parent.reason
        return ""

    def remaining(self) -> Optional[float]:
        """Seconds until the nearest deadline in the chain, or None."""
        candidates = []
        if self._deadline is not None:
            candidates.append(self._deadline - self._clock())
        if self._parent is not None:
            parent_remaining = self._parent.remaining()
            if parent_remaining is not None:
                candidates.append(parent_remaining)
        if not candidates:
            return None
        return max(0.0, min(candidates))

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled(self.reason)

    def child(self) -> "CancelToken":
        return CancelToken(parent=self, clock=self._clock)


def iter_completed(
    func: Callable[[T], R],
    items: Sequence[T] | Iterable[T],
    max_workers: int,
) -> Iterator[Outcome[T, R]]:
    """
    Run func over items with at most max_workers calls in flight and yield
    (item, result, error) in completion order. Worker exceptions are yielded,
    not raised, so the single consumer decides what is fatal.

    Closing the generator early cancels every item that has not started yet;
    calls already running are waited for, so callers should signal them to
    stop (e.g. via a CancelToken) before closing.
    """
    items = list(items)
    if not items:
        return
    workers = max(1, min(int(max_workers), len(items)))
    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures: Dict[Future[R], T] = {executor.submit(func, item): item for item in items}
        try:
            for fut in as_completed(futures):
                item = futures[fut]
                try:
                    result = fut.result()
                except Exception as e:
                    yield item, None, e
                    continue
                yield item, result, None
        finally:
            for pending in futures:
                pending.cancel()
