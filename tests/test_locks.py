import threading
import time

from gpunode.core.locks import ReadWriteLock


def test_readers_share_the_lock():
    lock = ReadWriteLock()
    inside = threading.Event()
    release = threading.Event()

    def reader():
        with lock.read():
            inside.set()
            release.wait(timeout=2)

    thread = threading.Thread(target=reader, daemon=True)
    thread.start()
    assert inside.wait(timeout=2)

    acquired = []
    second = threading.Thread(target=lambda: (lock.acquire_read(), acquired.append(True), lock.release_read()), daemon=True)
    second.start()
    second.join(timeout=2)

    assert acquired == [True]
    release.set()
    thread.join(timeout=2)


def test_writer_excludes_readers():
    lock = ReadWriteLock()
    events = []

    lock.acquire_write()

    def reader():
        with lock.read():
            events.append("read")

    thread = threading.Thread(target=reader, daemon=True)
    thread.start()
    time.sleep(0.05)
    events.append("write-done")
    lock.release_write()
    thread.join(timeout=2)

    assert events == ["write-done", "read"]


def test_waiting_writer_blocks_new_readers():
    lock = ReadWriteLock()
    order = []
    lock.acquire_read()

    def writer():
        with lock.write():
            order.append("write")

    def late_reader():
        with lock.read():
            order.append("read")

    writer_thread = threading.Thread(target=writer, daemon=True)
    writer_thread.start()
    time.sleep(0.05)

    reader_thread = threading.Thread(target=late_reader, daemon=True)
    reader_thread.start()
    time.sleep(0.05)

    lock.release_read()
    writer_thread.join(timeout=2)
    reader_thread.join(timeout=2)

    assert order == ["write", "read"]
