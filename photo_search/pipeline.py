"""Background embedding generation.

A priority queue of photos drained by ``max_concurrent`` worker threads:

    enqueue(photo)  -->  heap (-priority, seq)  -->  worker: provider.image_to_embedding
                                                         |-- ok:   store + index, completed
                                                         |-- fail: retry_count += 1, re-queue
                                                         '-- out of retries: failed (persisted)

The in-memory queue is not the source of truth: ``recover()`` rebuilds the
pending set from storage (photos lacking an embedding for the current model
version, minus persisted terminal failures).
"""

import heapq
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass

from errors import EmbeddingError, QueueExhausted
from models import EmbeddingProvider
from similarity import DimensionMismatch
from store import Embedding, LibraryStore
from vector_index import VectorIndex

logger = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
LOG_EVERY = 100  # completed tasks between progress log lines


@dataclass
class QueueTask:
    photo_id: str
    path: str
    priority: int = 0
    status: str = PENDING
    retry_count: int = 0
    max_retries: int = 3
    error: str | None = None
    force: bool = False
    seq: int = 0
    enqueued_at: float = 0.0
    finished_at: float | None = None

    def as_dict(self) -> dict:
        d = asdict(self)
        d.pop("seq")
        return d


def _task_args(item) -> tuple[str, str, int]:
    if isinstance(item, dict):
        return item["photo_id"], item["path"], int(item.get("priority", 0))
    if len(item) == 3:
        return item[0], item[1], int(item[2])
    photo_id, path = item
    return photo_id, path, 0


class VectorGenerationPipeline:
    def __init__(
        self,
        provider: EmbeddingProvider,
        store: LibraryStore,
        index: VectorIndex | None = None,
        model_version: str = "default",
        max_concurrent: int = 2,
        max_retries: int = 3,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self._provider = provider
        self._store = store
        self._index = index
        self.model_version = model_version
        self.max_concurrent = max_concurrent
        self.max_retries = max_retries

        self._cond = threading.Condition()
        self._tasks: dict[str, QueueTask] = {}
        self._heap: list[tuple[int, int, str]] = []
        self._seq = itertools.count()
        self._in_flight = 0
        self._paused = False
        self._shutdown = False
        self._completed_since_log = 0

        self._executor: ThreadPoolExecutor | None = None

    # -- workers --

    def _ensure_workers(self) -> None:
        with self._cond:
            if self._executor is not None or self._shutdown:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_concurrent, thread_name_prefix="vector-gen"
            )
            for _ in range(self.max_concurrent):
                self._executor.submit(self._worker_loop)
        logger.info("Started %d embedding workers (%s)", self.max_concurrent, self.model_version)

    def _next_task(self) -> QueueTask | None:
        """Pop the highest-priority live task. Caller holds the condition."""
        while self._heap:
            _, seq, photo_id = heapq.heappop(self._heap)
            task = self._tasks.get(photo_id)
            if task is not None and task.status == PENDING and task.seq == seq:
                return task
        return None

    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                task = None
                while not self._shutdown:
                    if not self._paused:
                        task = self._next_task()
                        if task is not None:
                            break
                    self._cond.wait()
                if self._shutdown:
                    return
                task.status = PROCESSING
                self._in_flight += 1

            try:
                self._process(task)
            except Exception as e:
                # store errors too; the worker keeps looping
                logger.warning("Embedding worker error on %s", task.photo_id, exc_info=True)
                self._fail(task, f"{type(e).__name__}: {e}")
            finally:
                with self._cond:
                    self._in_flight -= 1
                    self._cond.notify_all()

    def _process(self, task: QueueTask) -> None:
        if not task.force and self._store.has_embedding(task.photo_id, self.model_version):
            logger.debug("Embedding already present, skipping %s", task.photo_id)
            self._complete(task)
            return

        try:
            emb = self._provider.image_to_embedding(task.path)
            embedding = Embedding(
                photo_id=task.photo_id,
                vector=emb.vector,
                model_version=self.model_version,
                dimension=emb.dimension,
            )
            if self._index is not None:
                self._index.add(task.photo_id, emb.vector)
            self._store.save_embedding(embedding)
        except (EmbeddingError, DimensionMismatch) as e:
            self._fail(task, f"{type(e).__name__}: {e}")
            return
        except Exception as e:
            logger.warning("Unexpected error embedding %s", task.photo_id, exc_info=True)
            self._fail(task, f"{type(e).__name__}: {e}")
            return

        self._store.clear_failure(task.photo_id, self.model_version)
        self._complete(task)

    def _complete(self, task: QueueTask) -> None:
        with self._cond:
            task.status = COMPLETED
            task.error = None
            task.finished_at = time.time()
            self._completed_since_log += 1
            if self._completed_since_log >= LOG_EVERY:
                self._completed_since_log = 0
                stats = self._stats_locked()
                logger.info(
                    "Embedding progress: %d completed, %d pending, %d failed",
                    stats["completed"], stats["pending"], stats["failed"],
                )

    def _fail(self, task: QueueTask, error: str) -> None:
        with self._cond:
            task.error = error
            if task.retry_count < task.max_retries:
                task.retry_count += 1
                task.status = PENDING
                self._push(task)
                logger.debug(
                    "Retrying %s (%d/%d): %s", task.photo_id, task.retry_count, task.max_retries, error
                )
                return
            task.status = FAILED
            task.finished_at = time.time()
            retries = task.retry_count

        logger.warning("%s", QueueExhausted(task.photo_id, retries, error))
        try:
            self._store.record_failure(task.photo_id, self.model_version, error, retries)
        except Exception:
            logger.warning("Could not persist failure for %s", task.photo_id, exc_info=True)

    def _push(self, task: QueueTask) -> None:
        """Caller holds the condition."""
        task.seq = next(self._seq)
        heapq.heappush(self._heap, (-task.priority, task.seq, task.photo_id))
        self._cond.notify()

    # -- public API --

    def enqueue(self, photo_id: str, path: str, priority: int = 0, force: bool = False) -> QueueTask:
        """Queue a photo for embedding. Fire-and-forget; poll ``get_stats()``.

        A photo already pending keeps its place unless the new priority is
        higher. Completed or failed photos are queued again from scratch.
        """
        if self._shutdown:
            raise RuntimeError("Pipeline has been shut down")
        with self._cond:
            task = self._tasks.get(photo_id)
            if task is not None and task.status in (PENDING, PROCESSING):
                if task.status == PENDING and priority > task.priority:
                    task.priority = priority
                    self._push(task)
                task.force = task.force or force
            else:
                task = QueueTask(
                    photo_id=photo_id,
                    path=path,
                    priority=priority,
                    max_retries=self.max_retries,
                    force=force,
                    enqueued_at=time.time(),
                )
                self._tasks[photo_id] = task
                self._push(task)
        self._ensure_workers()
        return task

    def enqueue_batch(self, items) -> int:
        """Queue ``(photo_id, path[, priority])`` tuples or dicts. Returns the number queued."""
        count = 0
        for item in items:
            photo_id, path, priority = _task_args(item)
            self.enqueue(photo_id, path, priority)
            count += 1
        return count

    def recover(self, limit: int | None = None) -> int:
        """Re-derive pending work from storage after a restart."""
        photos = self._store.get_unprocessed_photos(self.model_version, limit)
        for photo in photos:
            self.enqueue(photo.photo_id, photo.path)
        if photos:
            logger.info("Recovered %d photos without %s embeddings", len(photos), self.model_version)
        return len(photos)

    def _stats_locked(self) -> dict:
        counts = {PENDING: 0, PROCESSING: 0, COMPLETED: 0, FAILED: 0}
        for task in self._tasks.values():
            counts[task.status] += 1
        return {
            "pending": counts[PENDING],
            "processing": counts[PROCESSING],
            "completed": counts[COMPLETED],
            "failed": counts[FAILED],
            "total": len(self._tasks),
            "paused": self._paused,
            "max_concurrent": self.max_concurrent,
        }

    def get_stats(self) -> dict:
        with self._cond:
            return self._stats_locked()

    def get_task(self, photo_id: str) -> QueueTask | None:
        with self._cond:
            return self._tasks.get(photo_id)

    def list_tasks(self, status: str | None = None) -> list[QueueTask]:
        with self._cond:
            return [t for t in self._tasks.values() if status is None or t.status == status]

    def cancel(self) -> None:
        """Stop dequeuing new tasks; in-flight tasks run to completion."""
        with self._cond:
            self._paused = True
        logger.info("Embedding queue paused")

    def resume(self) -> None:
        with self._cond:
            self._paused = False
            self._cond.notify_all()

    @property
    def cancelled(self) -> bool:
        return self._paused

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until nothing is processing and nothing runnable is pending."""

        def idle() -> bool:
            if self._in_flight:
                return False
            if self._paused:
                return True
            return not any(t.status == PENDING for t in self._tasks.values())

        with self._cond:
            return self._cond.wait_for(idle, timeout)

    def clear_finished(self) -> int:
        with self._cond:
            done = [pid for pid, t in self._tasks.items() if t.status in (COMPLETED, FAILED)]
            for pid in done:
                del self._tasks[pid]
            return len(done)

    def retry_failed(self) -> int:
        """Give every failed task a fresh set of retries."""
        with self._cond:
            failed = [t for t in self._tasks.values() if t.status == FAILED]
            for task in failed:
                task.status = PENDING
                task.retry_count = 0
                task.error = None
                task.finished_at = None
                self._push(task)
        for task in failed:
            self._store.clear_failure(task.photo_id, self.model_version)
        if failed:
            self._ensure_workers()
        return len(failed)

    def shutdown(self, wait: bool = True) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
