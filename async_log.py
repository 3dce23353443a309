# async_log.py

import logging
import logging.handlers
import queue
import time
from typing import List, Optional

LOG_FORMAT = '%(asctime)sZ - %(levelname)s - %(name)s - %(message)s'

# --- Logging Setup ---
logger = logging.getLogger("LoadRunner")
if not logger.hasHandlers():
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)
    formatter.converter = time.gmtime # UTC timestamps
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    logger.setLevel(logging.INFO)
logger.propagate = False # Prevent duplicate logs if root logger is configured


def configure_logging(debug: bool):
    """Sets the LoadRunner logger (and its handlers) to DEBUG or INFO."""
    log_level = logging.DEBUG if debug else logging.INFO
    logger.setLevel(log_level)
    for handler in logger.handlers:
        handler.setLevel(log_level)
    logger.debug(f"LoadRunner logging level set to {logging.getLevelName(log_level)}")


class DroppingQueueHandler(logging.handlers.QueueHandler):
    """QueueHandler whose enqueue never blocks: a record is discarded when the queue is full."""

    def __init__(self, log_queue: queue.Queue):
        super().__init__(log_queue)
        self.dropped = 0

    def enqueue(self, record: logging.LogRecord):
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            self.dropped += 1


class AsyncLogChannel:
    """
    Moves the LoadRunner logger onto a bounded queue drained by a single listener
    thread, so that workers never wait on console I/O. While started, the logger's
    own handlers are owned by the listener; stop() flushes the queue and puts them back.
    """

    def __init__(self, max_size: int = 1000, target: logging.Logger = logger):
        self.max_size = max_size
        self.target = target
        self.queue: queue.Queue = queue.Queue(maxsize=max_size)
        self.handler = DroppingQueueHandler(self.queue)
        self._listener: Optional[logging.handlers.QueueListener] = None
        self._saved_handlers: List[logging.Handler] = []

    @property
    def dropped(self) -> int:
        return self.handler.dropped

    @property
    def running(self) -> bool:
        return self._listener is not None

    def start(self):
        if self._listener is not None:
            return
        self._saved_handlers = list(self.target.handlers)
        self._listener = logging.handlers.QueueListener(
            self.queue, *self._saved_handlers, respect_handler_level=True
        )
        for handler in self._saved_handlers:
            self.target.removeHandler(handler)
        self.target.addHandler(self.handler)
        self._listener.start()

    def stop(self):
        if self._listener is None:
            return
        # QueueListener.stop() enqueues its sentinel with put_nowait; detach first and
        # let the listener free a slot so the sentinel always fits.
        self.target.removeHandler(self.handler)
        while self.queue.full():
            time.sleep(0.01)
        self._listener.stop()
        self._listener = None
        for handler in self._saved_handlers:
            self.target.addHandler(handler)
        self._saved_handlers = []
        if self.dropped:
            self.target.warning(f"Async log queue was full; dropped {self.dropped} log records.")

    def __enter__(self) -> 'AsyncLogChannel':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.stop()
