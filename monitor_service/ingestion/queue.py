"""Cola de ingesta de datos de sensores.

Desacopla el callback de paho del procesamiento bloqueante (BD + alertas):

- QueuedIngestion: cola acotada + pool de workers, rate limit global,
  reintentos con backoff y DLQ al agotar intentos
- InlineIngestion: procesamiento síncrono en el hilo que llama

La implementación se elige al construir (``create_ingestion_queue``). Si la
cola no acepta un job (llena o detenida) se procesa inline con un warning.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from ..errors import MonitorError, QueueUnavailableError
from ..metrics import INGEST_JOBS, INGEST_QUEUE_DEPTH
from .dead_letter import DeadLetterQueue
from .processor import IngestionJob, SensorDataProcessor
from .rate_limiter import TokenBucket
from .retry import RetryConfig, is_retryable

logger = logging.getLogger(__name__)


@dataclass
class IngestionConfig:
    """Configuración de la cola de ingesta."""
    async_enabled: bool = True
    queue_size: int = 1000
    num_workers: int = 10
    rate_limit_per_second: float = 50.0
    drain_timeout_seconds: float = 30.0
    retry: RetryConfig = field(default_factory=RetryConfig)

    @classmethod
    def from_env(cls) -> "IngestionConfig":
        return cls(
            async_enabled=os.getenv("INGEST_ASYNC_ENABLED", "true").lower() in ("true", "1", "yes"),
            queue_size=int(os.getenv("INGEST_QUEUE_SIZE", "1000")),
            num_workers=int(os.getenv("INGEST_NUM_WORKERS", "10")),
            rate_limit_per_second=float(os.getenv("INGEST_RATE_LIMIT", "50")),
            drain_timeout_seconds=float(os.getenv("INGEST_DRAIN_TIMEOUT", "30")),
            retry=RetryConfig(
                max_attempts=int(os.getenv("INGEST_MAX_ATTEMPTS", "3")),
                base_delay=float(os.getenv("INGEST_RETRY_BASE_DELAY", "2")),
                max_delay=float(os.getenv("INGEST_RETRY_MAX_DELAY", "60")),
            ),
        )


class _Counters:
    def __init__(self):
        self._lock = threading.Lock()
        self.values = {
            "enqueued": 0,
            "processed": 0,
            "rejected": 0,
            "retried": 0,
            "dead_lettered": 0,
            "inline": 0,
            "cut_short": 0,
        }

    def inc(self, name: str, amount: int = 1) -> None:
        with self._lock:
            self.values[name] += amount
        if name in ("processed", "rejected", "retried", "dead_lettered", "inline"):
            INGEST_JOBS.labels(outcome=name).inc(amount)

    def snapshot(self) -> dict:
        with self._lock:
            return dict(self.values)


class IIngestionQueue(ABC):
    """Interfaz común de ingesta."""

    @abstractmethod
    def enqueue(self, device_id: str, payload: dict) -> bool:
        """Acepta un job. True si se encoló o procesó; no implica éxito."""
        pass

    def start(self) -> None:
        pass

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        pass

    @property
    @abstractmethod
    def metrics(self) -> dict:
        pass


def _fail(job: IngestionJob, error: Exception, counters: _Counters, dlq: DeadLetterQueue) -> None:
    if isinstance(error, MonitorError) and not error.retryable:
        counters.inc("rejected")
        logger.info(
            "[INGEST] Rejected device=%s kind=%s err=%s",
            job.device_id, error.kind.value, error,
        )
        return

    counters.inc("dead_lettered")
    logger.error(
        "[INGEST] Job failed device=%s attempts=%d err=%s",
        job.device_id, job.attempts, error,
    )
    error_type = error.kind.value if isinstance(error, MonitorError) else type(error).__name__
    dlq.send(job.device_id, job.payload, str(error), error_type, job.attempts)


def _run_once(processor: SensorDataProcessor, job: IngestionJob, counters: _Counters, dlq: DeadLetterQueue) -> None:
    """Un solo intento; los fallos van directo a rechazo o DLQ."""
    job.attempts += 1
    try:
        processor.process(job)
    except Exception as e:
        _fail(job, e, counters, dlq)
        return
    counters.inc("processed")


class InlineIngestion(IIngestionQueue):
    """Procesa cada job en el hilo que llama, en un solo intento."""

    def __init__(self, processor: SensorDataProcessor, dlq: DeadLetterQueue):
        self._processor = processor
        self._dlq = dlq
        self._counters = _Counters()

    def enqueue(self, device_id: str, payload: dict) -> bool:
        self._counters.inc("enqueued")
        _run_once(self._processor, IngestionJob(device_id, payload), self._counters, self._dlq)
        return True

    @property
    def metrics(self) -> dict:
        return {"backend": "inline", **self._counters.snapshot()}


class QueuedIngestion(IIngestionQueue):
    """Cola acotada + pool de workers.

    - paho callback -> enqueue() retorna inmediatamente
    - workers -> rate limit -> process() con reintentos -> DLQ
    """

    def __init__(
        self,
        processor: SensorDataProcessor,
        dlq: DeadLetterQueue,
        config: Optional[IngestionConfig] = None,
        rate_limiter: Optional[TokenBucket] = None,
    ):
        self._processor = processor
        self._dlq = dlq
        self._config = config or IngestionConfig.from_env()
        self._limiter = rate_limiter or TokenBucket(self._config.rate_limit_per_second)
        self._queue: queue.Queue = queue.Queue(maxsize=self._config.queue_size)
        self._stop_event = threading.Event()
        self._running = False
        self._workers: list[threading.Thread] = []
        self._counters = _Counters()

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start worker threads."""
        if self._running:
            return
        self._stop_event.clear()
        for i in range(self._config.num_workers):
            t = threading.Thread(
                target=self._worker_loop,
                args=(i,),
                daemon=True,
                name=f"ingest-worker-{i}",
            )
            t.start()
            self._workers.append(t)
        self._running = True
        logger.info(
            "[INGEST] Started workers=%d queue_max=%d rate=%.1f/s",
            self._config.num_workers, self._queue.maxsize, self._config.rate_limit_per_second,
        )

    def stop(self, drain: bool = True, timeout: Optional[float] = None) -> None:
        """Detiene los workers.

        Con ``drain`` espera a que la cola se vacíe hasta ``timeout``; los jobs
        que queden se cortan con un warning y se envían a la DLQ.
        """
        if not self._running:
            return
        self._running = False
        timeout = self._config.drain_timeout_seconds if timeout is None else timeout

        if drain:
            deadline = time.monotonic() + timeout
            while self._queue.unfinished_tasks > 0 and time.monotonic() < deadline:
                time.sleep(0.05)

        self._stop_event.set()
        for t in self._workers:
            t.join(timeout=5.0)
        self._workers.clear()

        cut_short = 0
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            cut_short += 1
            self._dlq.send(job.device_id, job.payload, "shutdown before processing", "shutdown", job.attempts)
            self._queue.task_done()
        if cut_short:
            self._counters.inc("cut_short", cut_short)
            logger.warning("[INGEST] Shutdown cut short %d pending jobs", cut_short)

        INGEST_QUEUE_DEPTH.set(0)
        logger.info("[INGEST] Stopped. %s", self.metrics)

    def enqueue(self, device_id: str, payload: dict) -> bool:
        job = IngestionJob(device_id, payload)
        try:
            self._submit(job)
        except QueueUnavailableError as e:
            logger.warning("[INGEST] %s, processing inline device=%s", e, device_id)
            return self._inline(job)
        self._counters.inc("enqueued")
        INGEST_QUEUE_DEPTH.set(self._queue.qsize())
        return True

    def _submit(self, job: IngestionJob) -> None:
        if not self._running:
            raise QueueUnavailableError("Queue not running", device_id=job.device_id)
        try:
            self._queue.put_nowait(job)
        except queue.Full:
            raise QueueUnavailableError(f"Queue full ({self._queue.maxsize})", device_id=job.device_id) from None

    def _inline(self, job: IngestionJob) -> bool:
        self._counters.inc("inline")
        _run_once(self._processor, job, self._counters, self._dlq)
        return True

    def _worker_loop(self, worker_id: int) -> None:
        while not self._stop_event.is_set():
            try:
                job = self._queue.get(timeout=0.5)
            except queue.Empty:
                continue

            try:
                self._run_with_retry(job)
            except Exception:
                logger.exception("[INGEST] Worker %d unexpected error device=%s", worker_id, job.device_id)
            finally:
                self._queue.task_done()
                INGEST_QUEUE_DEPTH.set(self._queue.qsize())

    def _run_with_retry(self, job: IngestionJob) -> None:
        retry = self._config.retry
        while True:
            if not self._limiter.acquire(self._stop_event):
                self._cut_short(job)
                return

            job.attempts += 1
            try:
                self._processor.process(job)
            except Exception as e:
                if not is_retryable(e) or job.attempts >= retry.max_attempts:
                    _fail(job, e, self._counters, self._dlq)
                    return
                delay = retry.calculate_delay(job.attempts)
                self._counters.inc("retried")
                logger.warning(
                    "[INGEST] RETRY device=%s attempt=%d/%d delay=%.2fs err=%s",
                    job.device_id, job.attempts, retry.max_attempts, delay, e,
                )
                if self._stop_event.wait(delay):
                    self._cut_short(job)
                    return
                continue

            self._counters.inc("processed")
            return

    def _cut_short(self, job: IngestionJob) -> None:
        self._counters.inc("cut_short")
        logger.warning(
            "[INGEST] Job cut short by shutdown device=%s attempts=%d", job.device_id, job.attempts,
        )
        self._dlq.send(job.device_id, job.payload, "shutdown during retry", "shutdown", job.attempts)

    @property
    def metrics(self) -> dict:
        return {
            "backend": "queued",
            "running": self._running,
            "queue_depth": self._queue.qsize(),
            "queue_max": self._queue.maxsize,
            **self._counters.snapshot(),
        }


def create_ingestion_queue(
    processor: SensorDataProcessor,
    dlq: DeadLetterQueue,
    config: Optional[IngestionConfig] = None,
) -> IIngestionQueue:
    """Factory: elige la implementación según ``config.async_enabled``."""
    config = config or IngestionConfig.from_env()
    if not config.async_enabled:
        logger.info("[INGEST] Async disabled by INGEST_ASYNC_ENABLED=false, using inline ingestion")
        return InlineIngestion(processor, dlq)
    return QueuedIngestion(processor, dlq, config)
