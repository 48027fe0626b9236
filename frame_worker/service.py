"""
Main worker service.

Wires the ledger, queue and object store adapters selected by
configuration into the orchestrator, a pool of extraction workers, the
archive streamer and (optionally) the HTTP API.
"""

import signal
import sys
import logging
from typing import Optional, Dict, Any, List
from threading import Event, Thread

from .config import WorkerConfig
from .adapters.base import JobLedger, ObjectStore, WorkQueue
from .adapters.local_adapter import LocalObjectStore
from .adapters.memory_adapter import MemoryJobLedger, MemoryObjectStore, MemoryWorkQueue
from .archive import ArchiveStreamer
from .orchestrator import JobOrchestrator
from .processor import ExtractionWorker
from .logging_setup import setup_logging, log_exception
from .http_server import HTTPServer, create_app

logger = logging.getLogger("frame_worker")


class WorkerService:
    """Main worker service with adapter-based architecture"""

    def __init__(self, config: Optional[WorkerConfig] = None, ledger: Optional[JobLedger] = None,
                 queue: Optional[WorkQueue] = None, store: Optional[ObjectStore] = None):
        self.config = config or WorkerConfig.from_env()
        self.ledger = ledger
        self.queue = queue
        self.store = store
        self.orchestrator: Optional[JobOrchestrator] = None
        self.archive: Optional[ArchiveStreamer] = None
        self.workers: List[ExtractionWorker] = []
        self.http_server: Optional[HTTPServer] = None
        self.running = False
        self._stop_event = Event()
        self._threads: List[Thread] = []

    def initialize(self):
        """Initialize adapters and components based on configuration"""
        try:
            setup_logging(self.config.LOG_LEVEL, self.config.LOG_DIR or None)

            self.config.validate()

            self._initialize_adapters()

            self.orchestrator = JobOrchestrator(
                self.ledger, self.queue, self.store,
                url_expiry_sec=self.config.SIGNED_URL_EXPIRY_SEC
            )
            self.archive = ArchiveStreamer(
                self.ledger, self.store,
                url_expiry_sec=self.config.SIGNED_URL_EXPIRY_SEC
            )
            self.workers = [
                ExtractionWorker(self.config, self.ledger, self.store, self.queue, name=f"worker-{i}")
                for i in range(self.config.WORKER_CONCURRENCY)
            ]

            if self.config.ENABLE_HTTP_SERVER:
                storage_dir = str(self.store.base_path) if isinstance(self.store, LocalObjectStore) else None
                app = create_app(
                    self.orchestrator, self.archive, self.ledger,
                    stats_provider=self.get_stats,
                    storage_dir=storage_dir
                )
                self.http_server = HTTPServer(app, self.config.HTTP_PORT)
                self.http_server.start()

            logger.info("Worker service initialized successfully")

        except Exception as e:
            log_exception(logger, f"Failed to initialize worker service: {e}")
            raise

    def _initialize_adapters(self):
        """Create and connect adapters that were not injected"""
        if self.ledger is None:
            self.ledger = self._create_ledger()
        if self.queue is None:
            self.queue = self._create_queue()
        if self.store is None:
            self.store = self._create_store()

        self.ledger.connect()
        self.queue.connect()
        self.store.connect()

        logger.info(
            f"Initialized adapters: {self.config.LEDGER_TYPE} ledger, "
            f"{self.config.QUEUE_TYPE} queue, {self.config.STORAGE_TYPE} storage"
        )

    def _create_ledger(self) -> JobLedger:
        if self.config.LEDGER_TYPE == "postgres":
            from .adapters.postgres_adapter import PostgresJobLedger
            config = self.config.DATABASE_CONFIG
            return PostgresJobLedger(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10)
            )
        elif self.config.LEDGER_TYPE == "memory":
            return MemoryJobLedger()
        else:
            raise ValueError(f"Unsupported ledger type: {self.config.LEDGER_TYPE}")

    def _create_queue(self) -> WorkQueue:
        if self.config.QUEUE_TYPE == "postgres":
            from .adapters.postgres_adapter import PostgresWorkQueue
            config = self.config.DATABASE_CONFIG
            return PostgresWorkQueue(
                database_url=config["database_url"],
                pool_size=config.get("connection_pool_size", 5),
                timeout=config.get("connection_timeout", 10),
                lease_sec=self.config.CLAIM_LEASE_SEC
            )
        elif self.config.QUEUE_TYPE == "memory":
            return MemoryWorkQueue(lease_sec=self.config.CLAIM_LEASE_SEC)
        else:
            raise ValueError(f"Unsupported queue type: {self.config.QUEUE_TYPE}")

    def _create_store(self) -> ObjectStore:
        config = self.config.STORAGE_CONFIG
        if self.config.STORAGE_TYPE == "local":
            return LocalObjectStore(
                base_path=config.get("base_path", "./storage"),
                base_url=config.get("base_url", "http://localhost:3001")
            )
        elif self.config.STORAGE_TYPE == "s3":
            from .adapters.s3_adapter import S3ObjectStore
            return S3ObjectStore(
                bucket=config["bucket"],
                region=config.get("region", "us-east-1"),
                prefix=config.get("prefix", ""),
                endpoint_url=config.get("endpoint_url"),
                public_url=config.get("public_url")
            )
        elif self.config.STORAGE_TYPE == "memory":
            return MemoryObjectStore()
        else:
            raise ValueError(f"Unsupported storage type: {self.config.STORAGE_TYPE}")

    def start(self, block: bool = True):
        """Start one polling thread per worker plus the orphan reconciler"""
        if self.running:
            logger.warning("Worker service is already running")
            return

        self.running = True
        self._stop_event.clear()

        for worker in self.workers:
            thread = Thread(target=self._polling_loop, args=(worker,), name=worker.name, daemon=True)
            thread.start()
            self._threads.append(thread)

        if self.config.RECONCILE_INTERVAL_SEC > 0:
            thread = Thread(target=self._reconcile_loop, name="reconciler", daemon=True)
            thread.start()
            self._threads.append(thread)

        logger.info(f"Worker service started with {len(self.workers)} worker(s)")

        if block:
            try:
                while self.running:
                    self._stop_event.wait(1.0)
            except KeyboardInterrupt:
                logger.info("Received interrupt signal, shutting down...")

    def _polling_loop(self, worker: ExtractionWorker):
        """Claim and process jobs, backing off exponentially while idle"""
        logger.info(f"[{worker.name}] started, polling for jobs...")
        backoff_interval = self.config.POLL_INTERVAL_MS

        while not self._stop_event.is_set():
            try:
                processed = worker.run_once()

                if processed:
                    backoff_interval = self.config.POLL_INTERVAL_MS
                    continue

                self._stop_event.wait(backoff_interval / 1000.0)
                backoff_interval = min(
                    backoff_interval * self.config.BACKOFF_MULTIPLIER,
                    self.config.MAX_BACKOFF_MS
                )

            except Exception as e:
                log_exception(logger, f"Unexpected error in {worker.name} loop: {str(e)}")
                # Use backoff for errors too
                self._stop_event.wait(backoff_interval / 1000.0)
                backoff_interval = min(
                    backoff_interval * self.config.BACKOFF_MULTIPLIER,
                    self.config.MAX_BACKOFF_MS
                )

        logger.info(f"[{worker.name}] polling loop stopped")

    def _reconcile_loop(self):
        while not self._stop_event.wait(self.config.RECONCILE_INTERVAL_SEC):
            try:
                redispatched = self.orchestrator.reconcile_orphans(self.config.ORPHAN_AGE_SEC)
                if redispatched:
                    logger.info(f"Reconciled {len(redispatched)} orphaned job(s)")
            except Exception as e:
                log_exception(logger, f"Error reconciling orphaned jobs: {str(e)}")

    def stop(self):
        """Stop the worker service"""
        if not self.running:
            return

        self.running = False
        self._stop_event.set()

        for thread in self._threads:
            thread.join(timeout=5.0)
        self._threads = []

        if self.http_server:
            self.http_server.stop()

        for adapter in (self.queue, self.ledger, self.store):
            if adapter:
                adapter.close()

        logger.info("Worker service stopped")

    def get_stats(self) -> Dict[str, Any]:
        """Get worker statistics"""
        totals = {
            'jobs_processed': 0,
            'jobs_failed': 0,
            'jobs_retried': 0,
            'frames_extracted': 0,
            'total_processing_time': 0.0,
        }
        for worker in self.workers:
            totals['jobs_processed'] += worker.stats.jobs_processed
            totals['jobs_failed'] += worker.stats.jobs_failed
            totals['jobs_retried'] += worker.stats.jobs_retried
            totals['frames_extracted'] += worker.stats.frames_extracted
            totals['total_processing_time'] += worker.stats.total_processing_time

        stats = {
            'running': self.running,
            'workers': totals,
            'config': {
                'ledger_type': self.config.LEDGER_TYPE,
                'queue_type': self.config.QUEUE_TYPE,
                'storage_type': self.config.STORAGE_TYPE,
                'worker_concurrency': self.config.WORKER_CONCURRENCY,
                'poll_interval_ms': self.config.POLL_INTERVAL_MS
            }
        }

        if self.ledger:
            try:
                stats['ledger'] = self.ledger.get_stats()
            except Exception as e:
                logger.warning(f"Could not read ledger stats: {e}")

        return stats


def signal_handler(signum, frame):
    """Handle shutdown signals"""
    logger.info(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main():
    """Main entry point"""
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    service = WorkerService()

    try:
        service.initialize()
        service.start()
    except Exception as e:
        log_exception(logger, f"Worker failed to start: {str(e)}")
        sys.exit(1)
    finally:
        service.stop()


if __name__ == "__main__":
    main()
