import logging
import os
import sys
from typing import Any
from io import StringIO


class LcrLogger:
    def __init__(self, byte_limit: int = 50 * 1024 * 1024, lvl: int = logging.INFO):
        self.byte_limit = byte_limit
        self.total_bytes = 0
        self.buffer = StringIO()

        self.logger = logging.getLogger("LCR")
        self.logger.setLevel(lvl)
        self.logger.handlers.clear()
        self.logger.propagate = False

        # Records only land in the buffer. They are flushed to stderr so that
        # stdout stays free for the artifact JSON.
        self.buffer_handler = logging.StreamHandler(self.buffer)
        prefix_fmt = "%(asctime)s %(levelname)s [th:%(thread)s] (%(filename)s:%(lineno)d)"
        date_fmt = "%Y-%m-%d %H:%M:%S"
        formatter = logging.Formatter(f"{prefix_fmt}: %(message)s", date_fmt)
        self.buffer_handler.setFormatter(formatter)
        self.logger.addHandler(self.buffer_handler)

    def set_level(self, lvl: int) -> None:
        self.logger.setLevel(lvl)

    def _clear_buffer(self) -> None:
        self.buffer.seek(0)
        self.buffer.truncate(0)

    def _get_and_clear_buffer(self) -> str:
        content = self.buffer.getvalue()
        self._clear_buffer()
        return content

    def _remaining_bytes(self) -> int:
        return self.byte_limit - self.total_bytes

    def _check_and_output(self) -> None:
        content = self._get_and_clear_buffer()

        if not content:
            return

        content_bytes = len(content.encode('utf-8'))

        if content_bytes <= self._remaining_bytes():
            print(content, end='', file=sys.stderr, flush=True)
            self.total_bytes += content_bytes
            return

        if self._remaining_bytes() > 50:
            truncated = content.encode('utf-8')[: self._remaining_bytes() - 40].decode('utf-8', errors='ignore')
            print(truncated + " [TRUNCATED]", file=sys.stderr, flush=True)
        # Past the limit everything is dropped, but the overflow is reported once.
        if self.total_bytes < self.byte_limit:
            print(f"Log limit of {self.byte_limit} bytes exceeded", file=sys.stderr, flush=True)
        self.total_bytes = self.byte_limit

    def log(self, lvl: int, msg: Any, *args: Any, **kwargs: Any) -> None:
        self._clear_buffer()
        kwargs.setdefault("stacklevel", 2)
        self.logger.log(lvl, msg, *args, **kwargs)
        self._check_and_output()

    def debug(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.DEBUG, msg, *args, stacklevel=3, **kwargs)

    def info(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.INFO, msg, *args, stacklevel=3, **kwargs)

    def warning(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.WARNING, msg, *args, stacklevel=3, **kwargs)

    def error(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, stacklevel=3, **kwargs)

    def critical(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.CRITICAL, msg, *args, stacklevel=3, **kwargs)

    def exception(self, msg: Any, *args: Any, **kwargs: Any) -> None:
        self.log(logging.ERROR, msg, *args, exc_info=True, stacklevel=3, **kwargs)


def configure_lcr_logger() -> LcrLogger:
    log_level = logging.INFO
    env_level = os.environ.get("LCR_LOG_LEVEL")
    if env_level:
        env_level = env_level.strip().upper()
        if env_level in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            log_level = getattr(logging, env_level)

    return LcrLogger(lvl=log_level)


logger = configure_lcr_logger()
