import threading
import time
import pytest

import timer


def test_str_to_duration() -> None:
    assert timer.str_to_duration_float("30s") == 30.0
    assert timer.str_to_duration_float("2m") == 120.0
    assert timer.str_to_duration_float("1h2m3.5s") == 3723.5
    assert timer.str_to_duration_float("1d") == 86400.0
    assert timer.str_to_duration_float("100ms") == pytest.approx(0.1)
    assert timer.to_seconds(0.5) == 0.5
    assert timer.to_seconds("2s") == 2.0

    for bad in ("", "abc", "5x", "1s2m"):
        with pytest.raises(ValueError):
            timer.str_to_duration(bad)


def test_duration_to_str() -> None:
    assert timer.duration_to_str(0) == "0.00s"
    assert timer.duration_to_str(61.5) == "1m1.50s"
    assert timer.duration_to_str(90061) == "1d1h1m1.00s"


def test_timer() -> None:
    t = timer.Timer(0.05)
    assert not t.triggered()
    assert 0 < t.remaining() <= 0.05
    time.sleep(0.06)
    assert t.triggered()
    assert t.remaining() == 0.0
    assert t.target_duration() == "0.05s"


def test_cancel_deadline() -> None:
    c = timer.Cancel(0.05)
    assert not c.done()
    assert c.reason() == ""
    for _ in range(100):
        if c.wait(1.0):
            break
    assert c.expired()
    assert not c.cancelled()
    assert "deadline" in c.reason()


def test_cancel_from_other_thread() -> None:
    c = timer.background()
    threading.Timer(0.05, c.cancel).start()
    start = time.monotonic()
    assert c.wait(5.0)
    assert time.monotonic() - start < 2.0
    assert c.reason() == "cancelled"


def test_child_sees_parent_cancel() -> None:
    parent = timer.background()
    child = parent.with_deadline("10s")
    assert not child.done()
    parent.cancel()
    assert child.done()
    assert child.wait(1.0)
    assert child.reason() == "cancelled"


def test_sleep_or_cancel() -> None:
    assert not timer.sleep_or_cancel(None, 0.01)
    c = timer.background()
    c.cancel()
    assert timer.sleep_or_cancel(c, 5.0)
