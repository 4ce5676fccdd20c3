"""
Fire-and-forget persistence of policy evaluation traces.

The decision has already been returned to the caller when the audit record
is written, so a failing or slow audit store must never change it. Writes go
to a small thread pool; errors are logged and dropped. Expiry of old records
is handled by the sink (TTL), not here.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Optional, Set

from loguru import logger

from abac.interfaces import EvaluationSink
from abac.observability import increment
from abac.schemas import PolicyEvaluationRecord


class EvaluationRecorder:
    """
    Hands evaluation records to an EvaluationSink in the background.

    Usage:
        recorder = EvaluationRecorder(sink)
        recorder.persist(record)      # returns immediately
        recorder.flush(timeout=5)     # on shutdown / in tests
    """

    def __init__(
        self,
        sink: EvaluationSink,
        max_workers: int = 2,
        timeout_seconds: float = 5.0
    ):
        self.sink = sink
        self.timeout_seconds = timeout_seconds
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, max_workers),
            thread_name_prefix="abac-audit"
        )
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False

    def persist(self, evaluation: PolicyEvaluationRecord) -> Optional[Future]:
        """
        Queue one record for storage.

        Returns:
            The Future of the background write, or None if the recorder is
            shut down (the record is dropped and a warning logged)
        """
        with self._lock:
            if self._closed:
                logger.warning(
                    f"Recorder closed, dropping evaluation for user {evaluation.user_id}"
                )
                return None
            future = self._executor.submit(self._write, evaluation)
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def _write(self, evaluation: PolicyEvaluationRecord) -> bool:
        try:
            self.sink.save(evaluation)
            increment("abac.audit.written")
            return True
        except Exception as e:
            increment("abac.audit.failed")
            logger.error(
                f"Failed to persist policy evaluation for user {evaluation.user_id} "
                f"on {evaluation.resource.model_name}: {e}"
            )
            return False

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for queued writes.

        Returns:
            True if every write finished within the timeout
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout if timeout is not None else self.timeout_seconds)
        if not_done:
            logger.warning(f"{len(not_done)} audit writes still pending after flush timeout")
        return not not_done

    def shutdown(self) -> None:
        """Flush (bounded by timeout_seconds) and stop the worker threads."""
        self.flush()
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=False)
        logger.info("Evaluation recorder stopped")
