"""Background timers that drain the embedding queue and maintain clusters."""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

import structlog

from feedlens.models.pipeline import (
    AIProvider,
    ClusterGenerationResult,
    QueuedRequestEntry,
    QueueProcessResult,
    QueueSweepResult,
    SchedulerStats,
)
from feedlens.services.clustering import ClusteringManager
from feedlens.services.embedding_queue import EmbeddingQueueManager
from feedlens.services.rate_limiter import RequestQueueManager
from feedlens.utils.dates import utcnow

log = structlog.get_logger(__name__)

T = TypeVar("T")

MAX_RECORDED_ERRORS = 10
SCHEDULED_CLUSTER_HOURS_BACK = 48

DrainListener = Callable[[QueueProcessResult], None]


class PeriodicTask:
    """Runs ``action`` on a daemon thread immediately, then every ``interval_seconds``."""

    def __init__(self, name: str, interval_seconds: float, action: Callable[[], Any], stop_event: threading.Event) -> None:
        self.name = name
        self.interval_seconds = interval_seconds
        self.action = action
        self._stop_event = stop_event
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name=f"feedlens-{self.name}", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self.action()
            if self._stop_event.wait(self.interval_seconds):
                break

    def join(self, timeout: float | None = None) -> None:
        if self._thread is not None:
            self._thread.join(timeout=timeout)


class PipelineRuntime:
    """Owns the pipeline's background loops and their statistics.

    Timer ticks and manual triggers call the same methods. A failing tick is
    logged and kept in a rolling list of the last ten errors; the next tick
    still fires.
    """

    def __init__(
        self,
        queue: EmbeddingQueueManager,
        clustering: ClusteringManager,
        requests: RequestQueueManager | None = None,
        embedding_interval: float = 30.0,
        clustering_interval: float = 300.0,
        cleanup_interval: float = 3600.0,
        request_sweep_interval: float = 300.0,
        batch_size: int = 50,
    ) -> None:
        self.queue = queue
        self.clustering = clustering
        self.requests = requests
        self.embedding_interval = embedding_interval
        self.clustering_interval = clustering_interval
        self.cleanup_interval = cleanup_interval
        self.request_sweep_interval = request_sweep_interval
        self.batch_size = batch_size

        self._stats = SchedulerStats()
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._tasks: list[PeriodicTask] = []
        self._drain_listeners: list[DrainListener] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    def add_drain_listener(self, listener: DrainListener) -> None:
        self._drain_listeners.append(listener)

    def start(self) -> None:
        if self._tasks:
            return
        self._stop_event.clear()
        released = self.queue.store.release_processing_queue_items()
        if released:
            log.info("released_orphaned_queue_items", count=released)

        if self.queue.available:
            self._add_task("embeddings", self.embedding_interval, self.trigger_embedding_processing)
        else:
            log.warning("embedding_loop_disabled", reason="provider unavailable")
        self._add_task("clustering", self.clustering_interval, self._scheduled_clustering)
        self._add_task("cleanup", self.cleanup_interval, self.trigger_cleanup)
        if self.requests is not None:
            self._add_task("requests", self.request_sweep_interval, self.trigger_request_sweep)

        with self._lock:
            self._stats.is_running = True
        for task in self._tasks:
            task.start()
        log.info("scheduler_started", tasks=[task.name for task in self._tasks])

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        for task in self._tasks:
            task.join(timeout=timeout)
        self._tasks.clear()
        with self._lock:
            self._stats.is_running = False
        log.info("scheduler_stopped")

    def _add_task(self, name: str, interval: float, action: Callable[[], Any]) -> None:
        self._tasks.append(PeriodicTask(name, interval, lambda: self._guarded(name, action), self._stop_event))

    def _guarded(self, name: str, action: Callable[[], T]) -> T | None:
        try:
            return action()
        except Exception as exc:
            log.exception("scheduled_task_failed", task=name)
            self._record_error(f"{name} error: {exc}")
            return None

    def _record_error(self, message: str) -> None:
        with self._lock:
            self._stats.errors.append(message)
            del self._stats.errors[:-MAX_RECORDED_ERRORS]

    def _stamp(self, field: str, **increments: int) -> datetime:
        now = utcnow()
        with self._lock:
            setattr(self._stats, field, now)
            for name, amount in increments.items():
                setattr(self._stats, name, getattr(self._stats, name) + amount)
        return now

    def trigger_embedding_processing(self, batch_size: int | None = None) -> QueueProcessResult:
        result = self.queue.drain(batch_size or self.batch_size)
        self._stamp(
            "last_embedding_run",
            embeddings_processed=result.succeeded,
            embeddings_failed=result.failed,
        )
        for listener in self._drain_listeners:
            try:
                listener(result)
            except Exception as exc:
                log.exception("drain_listener_failed", listener=getattr(listener, "__qualname__", repr(listener)))
                self._record_error(f"drain listener error: {exc}")
        return result

    def _scheduled_clustering(self) -> ClusterGenerationResult:
        return self.trigger_cluster_generation(hours_back=SCHEDULED_CLUSTER_HOURS_BACK)

    def trigger_cluster_generation(
        self, user_id: str | None = None, hours_back: float | None = None
    ) -> ClusterGenerationResult:
        result = self.clustering.generate_clusters(user_id=user_id, hours_back=hours_back)
        self._stamp("last_clustering_run", clusters_generated=result.clusters_created)
        return result

    def trigger_cleanup(self) -> int:
        removed = self.clustering.expire_old_clusters()
        self._stamp("last_cleanup_run", clusters_expired=removed)
        return removed

    def trigger_request_sweep(self) -> QueueSweepResult:
        if self.requests is None:
            return QueueSweepResult()
        result = self.requests.process_queued_requests(self.dispatch_deferred_request)
        self._stamp("last_request_sweep", requests_swept=result.succeeded)
        return result

    def dispatch_deferred_request(self, request: QueuedRequestEntry) -> None:
        """Re-run a request that was deferred by the quota gate."""

        payload = request.payload if isinstance(request.payload, dict) else {}
        if request.operation == "embedding":
            self.run_embedding_request(request.user_id, request.provider, payload)
        elif request.operation == "clustering":
            self.run_clustering_request(request.user_id, request.provider)
        else:
            log.warning("unsupported_deferred_request", operation=request.operation, request_id=str(request.id))

    def run_embedding_request(self, user_id: str, provider: AIProvider, payload: dict[str, Any]) -> int:
        """Queue a user's embedding request and charge it to their daily quota."""

        article_ids = [uuid.UUID(str(value)) for value in payload.get("article_ids", [])]
        queued = self.queue.enqueue(article_ids, priority=int(payload.get("priority", 0)))
        if self.requests is not None:
            self.requests.limiter.record_success(
                user_id,
                "embedding",
                provider,
                payload.get("model", ""),
                0,
                metadata={"article_count": len(article_ids), "queued": queued},
            )
        return queued

    def run_clustering_request(self, user_id: str, provider: AIProvider) -> ClusterGenerationResult:
        result = self.trigger_cluster_generation(user_id=user_id)
        if self.requests is not None:
            labeler = self.clustering.labeler
            self.requests.limiter.record_success(
                user_id,
                "clustering",
                provider,
                labeler.provider.model if labeler.provider is not None else "",
                0,
                metadata={"clusters": result.clusters_created, "method": result.method},
            )
        return result

    def stats(self) -> SchedulerStats:
        with self._lock:
            snapshot = self._stats.model_copy(deep=True)
        snapshot.services = {
            "embeddings": self.queue.available,
            "clustering": True,
            "labeling": self.clustering.labeler.available,
        }
        return snapshot
