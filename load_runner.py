# load_runner.py

import asyncio
import logging
import time
from typing import Any, Callable, List, Optional
from urllib.parse import urlparse

import aiohttp

from async_log import AsyncLogChannel, configure_logging
from data_feeder import DataFeeder
from load_config import LoadTestConfig, WorkflowConfigError
from run_stats import RunStats, StatsAggregator
from workflow_executor import WorkflowExecutor

logger = logging.getLogger("LoadRunner")

__all__ = ["LoadRunner", "run_load_test"]

# Channel markers
_TICKET = object()
_TICKETS_CLOSED = object()
_RESULTS_CLOSED = object()

ExecutorFactory = Callable[[LoadTestConfig, aiohttp.ClientSession], Any]


class LoadRunner:
    """
    Drives the workflow with a fixed pool of `concurrency` workers fed by a bounded
    ticket channel. Tickets are issued either as an exact count (blocking when the
    channel is full) or for a wall-clock duration (dropped when the channel is
    full). Every step result is streamed into a StatsAggregator; run() returns the
    finalized RunStats once the last worker has finished.
    """

    def __init__(
        self,
        config: LoadTestConfig,
        *,
        feeder: Optional[DataFeeder] = None,
        executor_factory: Optional[ExecutorFactory] = None,
    ):
        self.config = config
        self.feeder = feeder if feeder is not None else DataFeeder(config.test_data, config.test_data_mode)
        self.executor_factory = executor_factory or WorkflowExecutor
        self.stats = StatsAggregator()
        self.running = False
        self.tickets_issued = 0
        self.tickets_dropped = 0
        self.iterations_started = 0

        configure_logging(self.config.debug)

        missing = [name for name in self.config.workflow if name not in self.config.apis]
        if missing:
            logger.critical(f"Workflow references undefined API steps: {missing}")
            raise WorkflowConfigError(f"Workflow references undefined API steps: {missing}")

        parsed_url = urlparse(self.config.base_url)
        if not parsed_url.scheme or not parsed_url.netloc:
            logger.critical(f"Invalid base URL: {self.config.base_url}")
            raise ValueError(f"base_url must be an absolute URL (e.g. 'http://example.com'), got '{self.config.base_url}'")

        mode = (
            f"duration={self.config.duration}s" if self.config.duration_mode
            else f"total_requests={self.config.total_requests}"
        )
        logger.info(f"Load Runner Initialized: Target='{self.config.base_url}', Concurrency={self.config.concurrency}, Mode={mode}")
        logger.info(f"Workflow Loaded: {' -> '.join(self.config.workflow) or '(empty)'} ({len(self.config.workflow)} steps)")

    def create_aiohttp_connector(self) -> aiohttp.BaseConnector:
        """Creates a connector sized for the worker pool."""
        connector_limit = max(100, self.config.concurrency * 2)
        connector_limit_per_host = max(50, self.config.concurrency)
        logger.debug(f"Creating TCPConnector: limit={connector_limit}, limit_per_host={connector_limit_per_host}")
        return aiohttp.TCPConnector(
            limit=connector_limit,
            limit_per_host=connector_limit_per_host,
            enable_cleanup_closed=True,
        )

    def create_session(self, connector: aiohttp.BaseConnector) -> aiohttp.ClientSession:
        """Creates the run's ClientSession; cookies are not kept so iterations stay isolated."""
        return aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            cookie_jar=aiohttp.DummyCookieJar(),
        )

    async def run(self) -> RunStats:
        """Executes the whole run and returns its statistics."""
        if self.running:
            raise RuntimeError("LoadRunner.run() is already in progress")
        self.running = True

        concurrency = self.config.concurrency
        tickets: asyncio.Queue = asyncio.Queue(maxsize=concurrency)
        results: asyncio.Queue = asyncio.Queue(maxsize=concurrency)
        tasks: List[asyncio.Task] = []
        log_channel = AsyncLogChannel(self.config.log_queue_size)
        log_channel.start()

        try:
            async with self.create_session(self.create_aiohttp_connector()) as session:
                executor = self.executor_factory(self.config, session)

                logger.info(f"Starting {concurrency} workers...")
                start_time = time.monotonic()
                workers = [asyncio.create_task(self._worker(i, executor, tickets, results)) for i in range(concurrency)]
                producer = asyncio.create_task(self._produce_tickets(tickets))
                closer = asyncio.create_task(self._close_results_when_done(workers, producer, results))
                tasks = workers + [producer, closer]

                logger.info("Collecting results...")
                while True:
                    result = await results.get()
                    if result is _RESULTS_CLOSED:
                        break
                    self.stats.record(result)
                run_duration = time.monotonic() - start_time
                await closer
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            self.running = False
            log_channel.stop()

        logger.info(
            f"Run complete in {run_duration:.3f}s: {self.iterations_started} iterations, "
            f"{self.tickets_issued} tickets issued, {self.tickets_dropped} dropped by admission control"
        )
        return self.stats.finalize(run_duration)

    async def _produce_tickets(self, tickets: asyncio.Queue):
        """Issues tickets per the configured mode, then closes the channel once per worker."""
        if not self.config.duration_mode:
            logger.debug(f"Issuing {self.config.total_requests} tickets...")
            for _ in range(self.config.total_requests):
                await tickets.put(_TICKET)
                self.tickets_issued += 1
        else:
            logger.debug(f"Issuing tickets for {self.config.duration}s...")
            deadline = time.monotonic() + self.config.duration
            while time.monotonic() < deadline:
                try:
                    tickets.put_nowait(_TICKET)
                    self.tickets_issued += 1
                except asyncio.QueueFull:
                    # Admission control: never wait for a free slot in duration mode
                    self.tickets_dropped += 1
                await asyncio.sleep(0)

        for _ in range(self.config.concurrency):
            await tickets.put(_TICKETS_CLOSED)
        logger.info("Ticket generation complete, channel closed.")

    async def _worker(self, worker_id: int, executor: Any, tickets: asyncio.Queue, results: asyncio.Queue):
        """Runs one iteration per ticket until the channel closes or test data runs out."""
        logger.debug(f"Worker #{worker_id} started.")
        iterations = 0
        while True:
            ticket = await tickets.get()
            if ticket is _TICKETS_CLOSED:
                break

            record = self.feeder.next()
            if record is None:
                logger.warning(f"Worker #{worker_id}: all test data has been used; stopping early.")
                break

            self.iterations_started += 1
            iteration = self.iterations_started
            async for result in executor.iter_results(record, iteration):
                await results.put(result)
            iterations += 1
        logger.debug(f"Worker #{worker_id} finished after {iterations} iterations.")

    async def _close_results_when_done(self, workers: List[asyncio.Task], producer: asyncio.Task, results: asyncio.Queue):
        """Closes the result stream once every worker has returned."""
        outcomes = await asyncio.gather(*workers, return_exceptions=True)
        for i, outcome in enumerate(outcomes):
            if isinstance(outcome, BaseException):
                logger.error(f"Worker #{i} exited with unexpected error: {outcome!r}", exc_info=outcome if self.config.debug else False)

        # Workers may stop early (test data exhausted) and leave the producer blocked
        if not producer.done():
            logger.debug("Workers finished before the producer; cancelling ticket generation.")
            producer.cancel()
        await asyncio.gather(producer, return_exceptions=True)

        await results.put(_RESULTS_CLOSED)
        logger.info("All workers finished, result stream closed.")


async def run_load_test(config: LoadTestConfig, feeder: Optional[DataFeeder] = None) -> RunStats:
    """Builds a LoadRunner for `config` and runs it to completion."""
    return await LoadRunner(config, feeder=feeder).run()
