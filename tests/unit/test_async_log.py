import logging
import queue

from async_log import AsyncLogChannel, DroppingQueueHandler


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.messages = []

    def emit(self, record):
        self.messages.append(record.getMessage())


def _record(msg):
    return logging.LogRecord("LoadRunner.test", logging.INFO, __file__, 1, msg, None, None)


def test_full_queue_drops_instead_of_blocking():
    handler = DroppingQueueHandler(queue.Queue(maxsize=2))
    for i in range(5):
        handler.handle(_record(f"msg {i}"))
    assert handler.queue.qsize() == 2
    assert handler.dropped == 3


def test_channel_delivers_records_and_restores_handlers():
    target = logging.getLogger("LoadRunner.test_async_log")
    target.propagate = False
    target.setLevel(logging.INFO)
    sink = ListHandler()
    target.addHandler(sink)
    try:
        channel = AsyncLogChannel(max_size=100, target=target)
        with channel:
            assert channel.running
            assert target.handlers == [channel.handler]
            for i in range(10):
                target.info(f"record {i}")
        assert not channel.running
        assert target.handlers == [sink]
        assert sink.messages == [f"record {i}" for i in range(10)]
        assert channel.dropped == 0
    finally:
        target.removeHandler(sink)


def test_stop_without_start_is_harmless():
    channel = AsyncLogChannel(max_size=1, target=logging.getLogger("LoadRunner.test_async_idle"))
    channel.stop()
    assert not channel.running
