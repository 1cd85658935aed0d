import queue
import threading
import time

from crp.api_models import RoutingConfiguration
from crp.runtime import RuntimeState, RWLock, SnapshotConsumer


def test_readers_share_the_lock():
    lock = RWLock()
    inside = []
    both_in = threading.Event()

    def reader():
        with lock.read():
            inside.append(1)
            if len(inside) == 2:
                both_in.set()
            both_in.wait(timeout=2)

    threads = [threading.Thread(target=reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert both_in.is_set()


def test_writer_excludes_readers():
    lock = RWLock()
    order = []
    writing = threading.Event()

    def writer():
        with lock.write():
            writing.set()
            time.sleep(0.05)
            order.append("write-done")

    def reader():
        writing.wait()
        with lock.read():
            order.append("read")

    tw = threading.Thread(target=writer)
    tr = threading.Thread(target=reader)
    tw.start()
    tr.start()
    tw.join()
    tr.join()
    assert order == ["write-done", "read"]


def test_runtime_state_generations():
    state = RuntimeState()
    assert state.get_config() is None
    assert state.status()["generation"] == 0

    cfg = RoutingConfiguration()
    assert state.set_config(cfg) == 1
    assert state.set_config(cfg) == 2
    assert state.get_config() is cfg
    assert state.status()["routers"] == 0


def test_consumer_publishes_and_writes():
    channel = queue.Queue(maxsize=1)
    state = RuntimeState()
    written = []
    consumer = SnapshotConsumer(channel, state, writer=written.append)

    assert consumer.consume_one(timeout=0) is False

    cfg = RoutingConfiguration()
    channel.put(cfg)
    assert consumer.consume_one(timeout=0) is True
    assert state.get_config() is cfg
    assert written == [cfg]


def test_consumer_survives_write_failure():
    channel = queue.Queue(maxsize=1)
    state = RuntimeState()

    def broken(_cfg):
        raise OSError("read-only file system")

    consumer = SnapshotConsumer(channel, state, writer=broken)
    channel.put(RoutingConfiguration())
    assert consumer.consume_one(timeout=0) is True
    assert state.status()["generation"] == 1
