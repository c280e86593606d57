"""
Tests for per-chat locks.
"""

import threading
import time

from campaign_engine.session_lock import ChatLockManager


def test_lock_path_per_chat(tmp_path):
    locks = ChatLockManager(str(tmp_path))
    a = locks._lock_path(locks.lock_key("default", "a@c.us"))
    b = locks._lock_path(locks.lock_key("default", "b@c.us"))
    other_session = locks._lock_path(locks.lock_key("vendas", "a@c.us"))
    assert len({a, b, other_session}) == 3
    assert a.parent == tmp_path.resolve()


def test_same_chat_is_serialized(tmp_path):
    locks = ChatLockManager(str(tmp_path))
    events = []

    def worker(name):
        with locks.lock("default", "a@c.us"):
            events.append(f"{name}-in")
            time.sleep(0.05)
            events.append(f"{name}-out")

    threads = [threading.Thread(target=worker, args=(n,)) for n in ("t1", "t2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(events) == 4
    assert events[0].split("-")[0] == events[1].split("-")[0]
    assert events[2].split("-")[0] == events[3].split("-")[0]


def test_different_chats_do_not_block(tmp_path):
    locks = ChatLockManager(str(tmp_path))
    acquired = threading.Event()

    def other():
        with locks.lock("default", "b@c.us"):
            acquired.set()

    with locks.lock("default", "a@c.us"):
        t = threading.Thread(target=other)
        t.start()
        assert acquired.wait(timeout=2)
    t.join()


def test_released_on_error(tmp_path):
    locks = ChatLockManager(str(tmp_path))
    try:
        with locks.lock("default", "a@c.us"):
            raise ValueError("boom")
    except ValueError:
        pass
    with locks.lock("default", "a@c.us"):
        pass
