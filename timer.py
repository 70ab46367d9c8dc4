import time
import re
import threading
from typing import Optional


def duration_to_str(duration: float) -> str:
    days = int(duration // 86400)
    hours = int((duration % 86400) // 3600)
    minutes = int((duration % 3600) // 60)
    seconds = round(duration % 60, 2)
    duration_str = ""
    if days > 0:
        duration_str += f"{days}d"
    if hours > 0:
        duration_str += f"{hours}h"
    if minutes > 0:
        duration_str += f"{minutes}m"
    duration_str += f"{seconds:.2f}s"
    return duration_str


def str_to_duration(duration: str) -> tuple[int, int, int, float]:
    pattern = r'(?:(\d+)d)?(?:(\d+)h)?(?:(\d+)m)?(?:(\d+(?:\.\d+)?)s)?(?:(\d+)ms)?'
    match = re.fullmatch(pattern, duration)
    if not match or not duration:
        raise ValueError("Invalid time format. Expected format like '1d2h30m15.5s' or '100ms'.")
    days, hours, minutes, seconds, millis = (float(x or 0) for x in match.groups())
    return int(days), int(hours), int(minutes), seconds + millis / 1000


def str_to_duration_float(duration: str) -> float:
    days, hours, minutes, seconds = str_to_duration(duration)
    return days * 86400 + hours * 3600 + minutes * 60 + seconds


def to_seconds(duration: str | float) -> float:
    if isinstance(duration, str):
        return str_to_duration_float(duration)
    return float(duration)


class StopWatch:
    start_time: float
    end_time: float

    def __init__(self) -> None:
        pass

    @staticmethod
    def started() -> 'StopWatch':
        s = StopWatch()
        s.start()
        return s

    def start(self) -> None:
        self.start_time = time.monotonic()
        self.end_time = self.start_time
        self.stopped = False

    def stop(self) -> None:
        self.end_time = time.monotonic()
        self.stopped = True

    def __str__(self) -> str:
        return duration_to_str(self.elapsed())

    def elapsed(self) -> float:
        if self.stopped:
            return self.end_time - self.start_time
        return time.monotonic() - self.start_time


class Timer:
    stopwatch: StopWatch
    d: float

    def __init__(self, target_duration: str | float) -> None:
        self.start(target_duration)

    def start(self, target_duration: str | float) -> None:
        self.stopwatch = StopWatch.started()
        self.d = to_seconds(target_duration)

    def triggered(self) -> bool:
        return self.stopwatch.elapsed() >= self.d

    def remaining(self) -> float:
        return max(0.0, self.d - self.stopwatch.elapsed())

    def elapsed(self) -> str:
        return duration_to_str(min(self.stopwatch.elapsed(), self.d))

    def target_duration(self) -> str:
        return duration_to_str(self.d)

    def __str__(self) -> str:
        return self.elapsed()


class Cancel:
    """Caller-supplied cancellation signal with an optional deadline.

    Every polling loop checks `done()` between attempts and sleeps through
    `wait()` so that a `cancel()` from another thread interrupts it promptly.
    """

    def __init__(self, deadline: Optional[str | float] = None, parent: Optional['Cancel'] = None) -> None:
        self._event = threading.Event()
        self._timer = Timer(deadline) if deadline is not None else None
        self._parent = parent

    def with_deadline(self, deadline: str | float) -> 'Cancel':
        return Cancel(deadline, parent=self)

    def cancel(self) -> None:
        self._event.set()

    def cancelled(self) -> bool:
        if self._parent is not None and self._parent.cancelled():
            return True
        return self._event.is_set()

    def expired(self) -> bool:
        if self._parent is not None and self._parent.expired():
            return True
        return self._timer is not None and self._timer.triggered()

    def done(self) -> bool:
        return self.cancelled() or self.expired()

    def reason(self) -> str:
        if self._parent is not None and self._parent.done():
            return self._parent.reason()
        if self._event.is_set():
            return "cancelled"
        if self._timer is not None and self._timer.triggered():
            return f"deadline of {self._timer.target_duration()} exceeded"
        return ""

    def wait(self, interval: float) -> bool:
        if self._timer is not None:
            interval = min(interval, self._timer.remaining())
        if self._parent is None:
            self._event.wait(interval)
            return self.done()
        # The parent's event can't wake us, so poll it in short slices.
        slice_timer = Timer(interval)
        while not slice_timer.triggered() and not self.done():
            self._event.wait(min(0.05, slice_timer.remaining()))
        return self.done()


def background() -> Cancel:
    return Cancel()


def sleep_or_cancel(cancel: Optional[Cancel], interval: float) -> bool:
    if cancel is None:
        time.sleep(interval)
        return False
    return cancel.wait(interval)
