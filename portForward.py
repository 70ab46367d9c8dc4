"""
Tunnels a host port to the registry service with `kubectl port-forward`.

The same port number is used on both ends (e.g. 30123:30123), so the address
the registry is known by inside the cluster also works from the host once the
FQDN resolves to 127.0.0.1.
"""
import subprocess
import threading
from typing import Callable, Optional
import host
import timer
from common import tcp_port_open
from errors import TunnelNotReady
from lcrConfig import NAME
from logger import logger

READY_TIMEOUT = "30s"
READY_POLL_INTERVAL = 0.1


class PortForwarder:
    def __init__(
        self,
        kubeconfig: str,
        namespace: str,
        port: int,
        *,
        service: str = NAME,
        rsh: Optional[host.Host] = None,
        ready_timeout: str | float = READY_TIMEOUT,
        poll_interval: float = READY_POLL_INTERVAL,
        probe: Callable[[int], bool] = tcp_port_open,
    ) -> None:
        self.kubeconfig = kubeconfig
        self.namespace = namespace
        self.port = port
        self.service = service
        self.rsh = rsh or host.LocalHost()
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self.probe = probe
        self.process: Optional[subprocess.Popen[bytes]] = None
        self.started = False

    def _cmd(self) -> list[str]:
        return [
            "kubectl",
            "port-forward",
            "-n",
            self.namespace,
            f"svc/{self.service}",
            f"{self.port}:{self.port}",
        ]

    def start(self, cancel: Optional[timer.Cancel] = None) -> None:
        try:
            self.process = self.rsh.popen(self._cmd(), env={"KUBECONFIG": self.kubeconfig})
        except OSError as e:
            raise TunnelNotReady(f"failed to start port-forward to svc/{self.service}: {e}") from e
        self.started = True

        try:
            self._wait_ready(cancel)
        except TunnelNotReady:
            self.stop()
            raise

        logger.info(f"Port-forward established: {self.local_endpoint()} -> svc/{self.service}:{self.port}")

    def _wait_ready(self, cancel: Optional[timer.Cancel]) -> None:
        process = self.process
        if process is None:
            raise TunnelNotReady(f"port-forward to svc/{self.service} was never started")
        deadline = (cancel or timer.background()).with_deadline(self.ready_timeout)
        while True:
            if self.probe(self.port):
                return
            if process.poll() is not None:
                raise TunnelNotReady(f"port-forward to svc/{self.service} exited with code {process.returncode}")
            if deadline.wait(self.poll_interval):
                raise TunnelNotReady(f"port-forward on {self.local_endpoint()} not ready: {deadline.reason()}")

    def stop(self) -> None:
        if not self.started or self.process is None:
            return
        try:
            self.process.kill()
            self.process.wait()
        except OSError as e:
            logger.debug(f"Ignoring error while stopping port-forward: {e}")
        self.started = False
        logger.info(f"Port-forward on {self.local_endpoint()} closed")

    def local_endpoint(self) -> str:
        return f"127.0.0.1:{self.port}"

    @property
    def local_port(self) -> int:
        return self.port

    def pid(self) -> int:
        if self.process is not None:
            return self.process.pid
        return 0


class ActiveTunnels:
    """Port-forwarders started by this process, keyed by test ID.

    Setup registers the tunnel it started, and a later teardown call for the
    same test ID finds and stops it there.
    """

    def __init__(self) -> None:
        self._tunnels: dict[str, PortForwarder] = {}
        self._mu = threading.Lock()

    def put(self, test_id: str, pf: PortForwarder) -> Optional[PortForwarder]:
        with self._mu:
            previous = self._tunnels.get(test_id)
            self._tunnels[test_id] = pf
            return previous

    def get(self, test_id: str) -> Optional[PortForwarder]:
        with self._mu:
            return self._tunnels.get(test_id)

    def pop(self, test_id: str) -> Optional[PortForwarder]:
        with self._mu:
            return self._tunnels.pop(test_id, None)

    def discard(self, test_id: str, pf: PortForwarder) -> None:
        # Only drop the entry if it still points at `pf`.
        with self._mu:
            if self._tunnels.get(test_id) is pf:
                del self._tunnels[test_id]

    def stop(self, test_id: str) -> bool:
        pf = self.pop(test_id)
        if pf is None:
            return False
        pf.stop()
        return True

    def stop_all(self) -> int:
        with self._mu:
            tunnels = list(self._tunnels.values())
            self._tunnels.clear()
        for pf in tunnels:
            pf.stop()
        return len(tunnels)

    def __contains__(self, test_id: str) -> bool:
        with self._mu:
            return test_id in self._tunnels

    def __len__(self) -> int:
        with self._mu:
            return len(self._tunnels)


active_tunnels = ActiveTunnels()
