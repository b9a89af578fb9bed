import asyncio
import logging
from collections import deque
from dataclasses import dataclass

from pulsecrm.core.observability import log_event, pipeline_logger
from pulsecrm.services.campaign_orchestrator import CampaignOrchestrator


@dataclass(frozen=True)
class DeliveryJob:
    campaign_id: str


class DeliveryWorker:
    """In-process consumer of campaign delivery jobs.

    Jobs are queued by the API (possibly from a threadpool thread) and consumed on the
    event loop that called ``start``. Each job waits ``start_delay_seconds`` before its
    run begins. Different campaigns run concurrently; at most one run per campaign id is
    active at a time.
    """

    def __init__(
        self,
        orchestrator: CampaignOrchestrator,
        *,
        start_delay_seconds: float = 1.0,
        maxsize: int = 0,
    ):
        self._orchestrator = orchestrator
        self._start_delay_seconds = start_delay_seconds
        self._queue: asyncio.Queue[DeliveryJob] = asyncio.Queue(maxsize=maxsize)
        self._loop: asyncio.AbstractEventLoop | None = None
        self._consumer: asyncio.Task | None = None
        self._runs: set[asyncio.Task] = set()
        self._active: set[str] = set()
        self._queued_ids: deque[str] = deque()

    @property
    def running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def pending(self) -> list[str]:
        return list(self._queued_ids)

    def active_campaigns(self) -> set[str]:
        return set(self._active)

    def enqueue(self, campaign_id: str) -> DeliveryJob:
        """Queue a job, raising ``asyncio.QueueFull`` to the caller when there is no room.

        Off-loop callers block until the put has happened on the worker's loop.
        """
        job = DeliveryJob(campaign_id=campaign_id)
        if self._loop is not None and self._loop.is_running() and not self._on_loop():
            asyncio.run_coroutine_threadsafe(self._put(job), self._loop).result()
        else:
            self._put_nowait(job)
        log_event(pipeline_logger, "delivery_job_enqueued", campaign_id=campaign_id)
        return job

    def attach(self) -> None:
        """Bind to the running loop so enqueues from other threads are serialized on it."""
        self._loop = asyncio.get_running_loop()

    def start(self) -> None:
        if self.running:
            return
        self.attach()
        self._consumer = asyncio.create_task(self._consume())
        log_event(pipeline_logger, "delivery_worker_started", queued=self._queue.qsize())

    async def stop(self) -> None:
        tasks = list(self._runs)
        if self._consumer is not None:
            tasks.append(self._consumer)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._consumer = None
        log_event(pipeline_logger, "delivery_worker_stopped", interrupted=len(self._active))

    async def join(self) -> None:
        """Wait until every queued job has been picked up and every run has finished."""
        await self._queue.join()
        while self._runs:
            await asyncio.gather(*list(self._runs), return_exceptions=True)

    def _put_nowait(self, job: DeliveryJob) -> None:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            log_event(pipeline_logger, "delivery_queue_full", level=logging.WARNING, campaign_id=job.campaign_id)
            raise
        self._queued_ids.append(job.campaign_id)

    async def _put(self, job: DeliveryJob) -> None:
        self._put_nowait(job)

    def _on_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    async def _consume(self) -> None:
        while True:
            job = await self._queue.get()
            if self._queued_ids:
                self._queued_ids.popleft()
            try:
                if job.campaign_id in self._active:
                    log_event(
                        pipeline_logger,
                        "delivery_job_skipped",
                        level=logging.WARNING,
                        campaign_id=job.campaign_id,
                        reason="already_running",
                    )
                    continue
                self._active.add(job.campaign_id)
                task = asyncio.create_task(self._run_job(job))
                self._runs.add(task)
                task.add_done_callback(self._runs.discard)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: DeliveryJob) -> None:
        try:
            if self._start_delay_seconds:
                await asyncio.sleep(self._start_delay_seconds)
            await self._orchestrator.run(job.campaign_id)
        finally:
            self._active.discard(job.campaign_id)
