import errno
import fcntl
import json
import os
import random
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, TypeVar
import host
import timer
from common import port_is_bindable
from errors import LcrError, LockTimeout, MaxRetriesReached
from logger import logger

DEFAULT_LEASE_PATH = "/tmp/testenv-lcr.json"
DEFAULT_LOCK_TIMEOUT = 10.0
DEFAULT_MAX_RETRY = 3
LOCK_POLL_INTERVAL = 0.01
NODE_PORT_MIN = 30000
NODE_PORT_MAX = 32767

T = TypeVar("T")


def default_lease_path() -> str:
    return os.environ.get("TESTENV_LCR_LEASE_PATH") or DEFAULT_LEASE_PATH


class LeaseTable:
    """Port (decimal string) -> owner mapping, only valid inside one lock scope."""

    def __init__(self, leases: Optional[dict[str, str]] = None) -> None:
        self.leases: dict[str, str] = dict(leases or {})
        self.dirty = False

    @staticmethod
    def parse(content: str) -> 'LeaseTable':
        # Garbage in the file must never fail a caller, it is simply overwritten.
        if not content.strip():
            return LeaseTable()
        try:
            data = json.loads(content)
        except ValueError:
            logger.warning("Lease file is not valid JSON, treating it as empty")
            return LeaseTable()
        if not isinstance(data, dict):
            logger.warning("Lease file does not hold a mapping, treating it as empty")
            return LeaseTable()
        return LeaseTable({str(k): str(v) for k, v in data.items()})

    def dump(self) -> str:
        return json.dumps(self.leases, indent=2)

    def ports(self) -> set[int]:
        ret = set()
        for port_str in self.leases:
            try:
                ret.add(int(port_str))
            except ValueError:
                pass
        return ret

    def port_of(self, owner: str) -> Optional[int]:
        for port_str, lease_owner in self.leases.items():
            if lease_owner == owner:
                try:
                    return int(port_str)
                except ValueError:
                    continue
        return None

    def __contains__(self, port: int) -> bool:
        return str(port) in self.leases

    def add(self, port: int, owner: str) -> None:
        self.leases[str(port)] = owner
        self.dirty = True

    def remove_owner(self, owner: str) -> Optional[int]:
        for port_str, lease_owner in list(self.leases.items()):
            if lease_owner == owner:
                del self.leases[port_str]
                self.dirty = True
                try:
                    return int(port_str)
                except ValueError:
                    return None
        return None

    def sweep(self, live_owners: set[str]) -> list[str]:
        stale = [owner for owner in self.leases.values() if owner not in live_owners]
        for port_str, owner in list(self.leases.items()):
            if owner not in live_owners:
                del self.leases[port_str]
                self.dirty = True
        return stale


class LeaseStore(ABC):
    """Holds the lease table; every access runs `fn` under mutual exclusion."""

    @abstractmethod
    def with_lock(self, fn: Callable[[LeaseTable], T], cancel: timer.Cancel) -> T:
        pass


class FileLeaseStore(LeaseStore):
    def __init__(self, path: str, poll_interval: float = LOCK_POLL_INTERVAL) -> None:
        self.path = path
        self.poll_interval = poll_interval

    def _lock(self, fd: int, cancel: timer.Cancel) -> None:
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                return
            except OSError as e:
                if e.errno not in (errno.EWOULDBLOCK, errno.EAGAIN):
                    raise LcrError(f"flock on {self.path} failed: {e}") from e
            if cancel.wait(self.poll_interval):
                raise LockTimeout(f"could not lock {self.path}: {cancel.reason()}")

    def _read(self, fd: int) -> str:
        os.lseek(fd, 0, os.SEEK_SET)
        chunks = []
        while True:
            chunk = os.read(fd, 65536)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks).decode("utf-8", errors="replace")

    def _write(self, fd: int, content: str) -> None:
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        data = content.encode("utf-8")
        while data:
            written = os.write(fd, data)
            data = data[written:]

    def with_lock(self, fn: Callable[[LeaseTable], T], cancel: timer.Cancel) -> T:
        dir_path = os.path.dirname(self.path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            self._lock(fd, cancel)
            try:
                table = LeaseTable.parse(self._read(fd))
                result = fn(table)
                if table.dirty:
                    self._write(fd, table.dump())
                return result
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


class MemoryLeaseStore(LeaseStore):
    """In-process store with the same lock-scope semantics, used by tests."""

    def __init__(self, leases: Optional[dict[str, str]] = None) -> None:
        self.leases: dict[str, str] = dict(leases or {})
        self._mutex = threading.Lock()

    def with_lock(self, fn: Callable[[LeaseTable], T], cancel: timer.Cancel) -> T:
        while not self._mutex.acquire(timeout=LOCK_POLL_INTERVAL):
            if cancel.done():
                raise LockTimeout(f"could not lock in-memory lease table: {cancel.reason()}")
        try:
            table = LeaseTable(self.leases)
            result = fn(table)
            if table.dirty:
                self.leases = dict(table.leases)
            return result
        finally:
            self._mutex.release()


def get_kind_clusters(rsh: Optional[host.Host] = None) -> list[str]:
    rsh = rsh or host.LocalHost()
    ret = rsh.run_or_raise(["kind", "get", "clusters"])
    return [line.strip() for line in ret.out.splitlines() if line.strip()]


class _CandidateRejected(Exception):
    def __init__(self, port: Optional[int], reason: str) -> None:
        self.port = port
        self.reason = reason
        super().__init__(reason)


class PortLeaseManager:
    """Hands out NodePorts to kind clusters through a lease table shared by all processes."""

    def __init__(
        self,
        store: Optional[LeaseStore] = None,
        *,
        timeout: float = DEFAULT_LOCK_TIMEOUT,
        max_retry: int = DEFAULT_MAX_RETRY,
        live_owners: Optional[Callable[[], list[str]]] = get_kind_clusters,
        port_available: Callable[[int], bool] = port_is_bindable,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store if store is not None else FileLeaseStore(default_lease_path())
        self.timeout = timeout
        self.max_retry = max_retry
        self.live_owners = live_owners
        self.port_available = port_available
        self.rng = rng or random.Random()

    @staticmethod
    def with_path(lease_path: str, **kwargs: Any) -> 'PortLeaseManager':
        return PortLeaseManager(FileLeaseStore(lease_path), **kwargs)

    def _deadline(self, cancel: Optional[timer.Cancel]) -> timer.Cancel:
        return (cancel or timer.background()).with_deadline(self.timeout)

    def _sweep(self, table: LeaseTable) -> None:
        if self.live_owners is None:
            return
        try:
            live = set(self.live_owners())
        except Exception as e:
            logger.debug(f"Skipping stale lease sweep, cannot list live clusters: {e}")
            return
        stale = table.sweep(live)
        if stale:
            logger.info(f"Removed stale port leases of {', '.join(sorted(stale))}")

    def _pick_port(self, table: LeaseTable, banned: set[int]) -> int:
        taken = table.ports() | banned
        free = [p for p in range(NODE_PORT_MIN, NODE_PORT_MAX + 1) if p not in taken]
        if not free:
            raise _CandidateRejected(None, "no unleased port left in the NodePort range")
        return self.rng.choice(free)

    def _claim(self, table: LeaseTable, owner: str, banned: set[int]) -> int:
        self._sweep(table)

        existing = table.port_of(owner)
        if existing is not None:
            logger.debug(f"{owner} already holds port {existing}")
            return existing

        port = self._pick_port(table, banned)
        if not self.port_available(port):
            raise _CandidateRejected(port, f"port {port} is not available on the host")
        if port in table:
            raise _CandidateRejected(port, f"port {port} is already leased")

        table.add(port, owner)
        return port

    def acquire_port(self, owner: str, cancel: Optional[timer.Cancel] = None) -> int:
        deadline = self._deadline(cancel)
        banned: set[int] = set()

        for attempt in range(self.max_retry):
            try:
                port = self.store.with_lock(lambda table: self._claim(table, owner, banned), deadline)
            except _CandidateRejected as e:
                logger.debug(f"Port lease attempt {attempt + 1}/{self.max_retry} for {owner} failed: {e.reason}")
                if e.port is not None:
                    banned.add(e.port)
            else:
                logger.info(f"Leased port {port} to {owner}")
                return port

            if deadline.done():
                raise LockTimeout(f"acquiring port for {owner}: {deadline.reason()}")

        raise MaxRetriesReached(f"could not find an available port for {owner} after {self.max_retry} attempts")

    def release_port(self, owner: str, cancel: Optional[timer.Cancel] = None) -> None:
        port = self.store.with_lock(lambda table: table.remove_owner(owner), self._deadline(cancel))
        if port is not None:
            logger.info(f"Released port {port} held by {owner}")

    def leases(self, cancel: Optional[timer.Cancel] = None) -> dict[str, str]:
        return self.store.with_lock(lambda table: dict(table.leases), self._deadline(cancel))
