import contextlib
import os
import socket
import tempfile
import typing
import jinja2
import lcrManifests
from typing import Callable, Iterator, Optional
from logger import logger
import timer


TEMPLATE_DIR = os.path.dirname(os.path.abspath(lcrManifests.__file__))


def render_template_to_string(template_name: str, **kwargs: typing.Any) -> str:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(TEMPLATE_DIR),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
    )
    return env.get_template(template_name).render(**kwargs)


# See:
#  - https://discuss.python.org/t/adding-atomicwrite-in-stdlib/11899
#  - https://code.activestate.com/recipes/579097-safely-and-atomically-write-to-a-file/
@contextlib.contextmanager
def atomic_write(
    filename: str,
    *,
    text: bool = True,
    mode: int = 0o644,
) -> Iterator[typing.IO[typing.Any]]:
    path = os.path.dirname(filename) or "."
    basename = os.path.basename(filename)

    fd, tmp = tempfile.mkstemp(prefix=basename + ".", dir=path, text=text)
    tmp_path: Optional[str] = tmp
    try:
        with os.fdopen(fd, 'w' if text else 'wb') as f:
            yield f
            f.flush()
            os.fchmod(f.fileno(), mode)

        os.replace(tmp, filename)
        tmp_path = None
    finally:
        if tmp_path is not None:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass


def port_is_bindable(port: int) -> bool:
    # Bind on all interfaces, like the NodePort will.
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        try:
            s.bind(("", port))
        except OSError:
            return False
    return True


def tcp_port_open(port: int, addr: str = "127.0.0.1", timeout: float = 0.1) -> bool:
    try:
        with socket.create_connection((addr, port), timeout=timeout):
            return True
    except OSError:
        return False


def wait_for_condition(
    condition_fn: Callable[[], bool],
    description: str,
    timeout: str | float = "30s",
    interval: str | float = "3s",
    cancel: Optional[timer.Cancel] = None,
) -> bool:
    """Polls `condition_fn` until it returns True.

    Returns False when `timeout` elapses or `cancel` fires first. Exceptions
    raised by the condition count as "not yet".
    """
    logger.debug(f"Waiting for {description}...")
    timeout_timer = timer.Timer(timeout)
    pause = timer.to_seconds(interval)

    while True:
        try:
            if condition_fn():
                logger.debug(f"{description} - condition met after {timeout_timer.elapsed()}")
                return True
        except Exception as e:
            logger.debug(f"Condition check failed: {e}")

        if timeout_timer.triggered():
            break
        if timer.sleep_or_cancel(cancel, min(pause, max(timeout_timer.remaining(), 0.001))):
            logger.debug(f"Stopped waiting for {description}: {cancel.reason() if cancel else ''}")
            return False

    logger.debug(f"Timed out waiting for {description} after {timeout_timer.target_duration()}")
    return False
