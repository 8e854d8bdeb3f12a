"""
Outbound side-effect queue.
Notifications, activity logs and error logs are queued here after the
primary write has committed. A bounded queue is drained by one worker
thread; a full queue drops the task and a failing task is logged and
discarded, so side effects never reach the caller.
"""
import queue
import threading
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.orm import Session

from ..config import settings

logger = structlog.get_logger(__name__)

Task = Callable[..., Any]

_STOP = object()


class Outbox:
    def __init__(self, session_factory: Optional[Callable[[], Session]] = None, max_size: Optional[int] = None) -> None:
        self._session_factory = session_factory
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_size or settings.outbox_max_size)
        self._worker: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    def submit(self, task: Task, **kwargs: Any) -> bool:
        """Queue task(db, **kwargs). Returns False if the queue is full."""
        self._ensure_worker()
        try:
            self._queue.put_nowait((task, kwargs))
        except queue.Full:
            self.dropped += 1
            logger.warning("outbox_full_task_dropped", task=getattr(task, "__name__", repr(task)))
            return False
        return True

    def flush(self) -> None:
        """Block until every queued task has run."""
        self._queue.join()

    def stop(self) -> None:
        with self._lock:
            worker = self._worker
            self._worker = None
        if worker is None:
            return
        self._queue.put(_STOP)
        worker.join()

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(target=self._run, name="attendance-outbox", daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                task, kwargs = item
                self._execute(task, kwargs)
            finally:
                self._queue.task_done()

    def _open_session(self) -> Session:
        if self._session_factory is None:
            from ..db import SessionLocal
            return SessionLocal()
        return self._session_factory()

    def _execute(self, task: Task, kwargs: dict) -> None:
        db = self._open_session()
        try:
            task(db, **kwargs)
        except Exception as e:
            db.rollback()
            logger.warning(
                "outbox_task_failed",
                task=getattr(task, "__name__", repr(task)),
                error=str(e),
                exc_info=True,
            )
        finally:
            db.close()


# Global singleton outbox
outbox = Outbox()
