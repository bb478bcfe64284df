"""Post-commit events.

The circulation state machine publishes an event once its transaction has
committed. Subscribers run on a small worker pool; their failures are
logged and never reach the publisher.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from threading import RLock
from typing import Callable, Dict, List, Optional, Type

from config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReturnCompleted:
    """A copy came back in usable condition."""

    copy_id: str
    edition_id: str
    borrow_id: int
    library_id: str
    returned_to_library_id: str
    occurred_at: Optional[datetime] = field(default=None, compare=False)


Handler = Callable[[object], None]


class EventBus:
    def __init__(self, max_workers: Optional[int] = None, synchronous: bool = False):
        self.synchronous = synchronous
        self._handlers: Dict[Type, List[Handler]] = {}
        self._lock = RLock()
        self._executor: Optional[ThreadPoolExecutor] = None
        if not synchronous:
            self._executor = ThreadPoolExecutor(
                max_workers=max_workers or settings.event_workers,
                thread_name_prefix="circulation-events",
            )

    def subscribe(self, event_type: Type, handler: Handler) -> None:
        with self._lock:
            self._handlers.setdefault(event_type, []).append(handler)

    def handlers_for(self, event_type: Type) -> List[Handler]:
        with self._lock:
            return list(self._handlers.get(event_type, []))

    def publish(self, event: object) -> List[Future]:
        """Dispatch ``event`` to its subscribers without waiting for them.

        In synchronous mode handlers run inline, still isolated from each
        other and from the caller.
        """
        futures: List[Future] = []
        handlers = self.handlers_for(type(event))
        if self.synchronous:
            for handler in handlers:
                self._run(handler, event)
            return futures
        with self._lock:
            executor = self._executor
            if executor is None:
                if handlers:
                    logger.warning(f"Event bus is shut down; dropping {type(event).__name__}")
                return futures
            for handler in handlers:
                futures.append(executor.submit(self._run, handler, event))
        return futures

    @staticmethod
    def _run(handler: Handler, event: object) -> None:
        name = getattr(handler, "__name__", repr(handler))
        try:
            handler(event)
        except Exception:
            logger.exception(f"Event handler {name} failed for {type(event).__name__}")

    def shutdown(self, wait: bool = True) -> None:
        """Stop the worker pool. Events published afterwards are logged and dropped."""
        with self._lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)
