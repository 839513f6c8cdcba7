"""
Queue management module
Bounded FIFO job queue with backpressure feeding a fixed worker pool
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("docqueue.queue")

JobHandler = Callable[[str], Awaitable[None]]


class QueueManager:
    """Manages the bounded job queue and worker pool"""

    def __init__(self, max_depth: int = 100, worker_pool_size: int = 1, retry_after_seconds: int = 5):
        self.queue: Optional[asyncio.Queue] = None
        self.workers: List[asyncio.Task] = []
        self.max_depth = max_depth
        self.worker_pool_size = worker_pool_size
        self.retry_after_seconds = retry_after_seconds
        self._handler: Optional[JobHandler] = None
        self._busy = 0
        self._drops = {"count": 0, "last_log": 0.0}

    def initialize(self):
        """Initialize the bounded queue on the running event loop"""
        self.queue = asyncio.Queue(maxsize=self.max_depth)
        logger.info("Queue manager initialized", extra={
            "component": "queue_manager",
            "max_depth": self.max_depth,
            "worker_pool_size": self.worker_pool_size
        })

    async def start_workers(self, handler: JobHandler):
        """Start the worker pool"""
        if not self.queue:
            raise RuntimeError("Queue not initialized")

        self._handler = handler
        for i in range(self.worker_pool_size):
            worker_task = asyncio.create_task(self._worker_loop(i))
            self.workers.append(worker_task)

        logger.info("Worker pool started", extra={
            "component": "queue_manager",
            "worker_count": self.worker_pool_size
        })

    async def stop_workers(self):
        """Stop all workers; a job in progress is cancelled"""
        for worker in self.workers:
            worker.cancel()

        if self.workers:
            await asyncio.gather(*self.workers, return_exceptions=True)

        self.workers.clear()
        logger.info("Worker pool stopped", extra={
            "component": "queue_manager"
        })

    def enqueue(self, job_id: str) -> bool:
        """
        Enqueue a job id for processing.
        Returns True if enqueued, False if the queue is full (backpressure).
        """
        if not self.queue:
            raise RuntimeError("Queue not initialized")

        try:
            self.queue.put_nowait(job_id)
        except asyncio.QueueFull:
            prometheus_metrics.increment_queue_drops(1)
            self.refresh_metrics()
            self._log_backpressure()
            return False

        self.refresh_metrics()
        return True

    def refresh_metrics(self):
        """Update queue depth and saturation metrics"""
        if self.queue:
            depth = self.queue.qsize()
            saturation = depth / self.max_depth if self.max_depth > 0 else 0

            prometheus_metrics.set_queue_depth(depth)
            prometheus_metrics.set_queue_saturation(saturation)

    def _log_backpressure(self):
        """Log backpressure event (rate limited)"""
        token = self._drops
        token["count"] += 1

        should_log = (token["count"] == 1 or
                      token["count"] % 100 == 0 or
                      time.time() - token["last_log"] > 60)

        if should_log:
            logger.warning("Queue backpressure - queue full", extra={
                "component": "queue_manager",
                "event": "backpressure",
                "queue_depth": self.queue.qsize() if self.queue else 0,
                "max_depth": self.max_depth,
                "drop_count": token["count"]
            })
            token["last_log"] = time.time()

    async def _worker_loop(self, worker_id: int):
        """Worker loop that drives queued jobs through the handler"""
        logger.info("Worker started", extra={
            "component": "queue_manager",
            "worker_id": worker_id
        })

        while True:
            try:
                job_id = await self.queue.get()
            except asyncio.CancelledError:
                logger.info("Worker cancelled", extra={
                    "component": "queue_manager",
                    "worker_id": worker_id
                })
                break

            self.refresh_metrics()
            self._busy += 1
            try:
                await self._handler(job_id)
            except asyncio.CancelledError:
                logger.info("Worker cancelled while processing", extra={
                    "component": "queue_manager",
                    "worker_id": worker_id,
                    "job_id": job_id
                })
                break
            except Exception:
                prometheus_metrics.increment_worker_errors(1)
                logger.exception("Worker loop error", extra={
                    "component": "queue_manager",
                    "worker_id": worker_id,
                    "job_id": job_id
                })
            finally:
                self._busy -= 1
                self.queue.task_done()

    async def join(self):
        """Wait until every enqueued job has been processed"""
        if self.queue:
            await self.queue.join()

    def get_queue_stats(self) -> Dict[str, Any]:
        """Get current queue statistics"""
        if not self.queue:
            return {"depth": 0, "max": self.max_depth, "saturation": 0.0, "busy_workers": 0}

        depth = self.queue.qsize()
        saturation = depth / self.max_depth if self.max_depth > 0 else 0.0

        return {
            "depth": depth,
            "max": self.max_depth,
            "saturation": saturation,
            "busy_workers": self._busy,
            "workers": len(self.workers),
        }
