import subprocess
from typing import Optional
import pytest

import host
from errors import TunnelNotReady
from portForward import ActiveTunnels, PortForwarder


class FakeHost(host.Host):
    """Runs `argv` in place of whatever command is asked for."""

    def __init__(self, argv: list[str]) -> None:
        super().__init__()
        self.argv = argv
        self.cmds: list[list[str]] = []
        self.envs: list[Optional[dict[str, str]]] = []

    def popen(self, cmd: host.Cmd, env: Optional[dict[str, str]] = None) -> subprocess.Popen[bytes]:
        self.cmds.append(host.cmd_to_args(cmd))
        self.envs.append(env)
        return subprocess.Popen(self.argv)


def _forwarder(rsh: host.Host, probe_result: bool, port: int = 30123) -> PortForwarder:
    return PortForwarder(
        "/tmp/kubeconfig",
        "testenv-lcr",
        port,
        rsh=rsh,
        ready_timeout=0.5,
        poll_interval=0.02,
        probe=lambda p: probe_result,
    )


def test_command_line() -> None:
    rsh = FakeHost(["sleep", "30"])
    pf = _forwarder(rsh, True)
    pf.start()
    try:
        assert rsh.cmds == [["kubectl", "port-forward", "-n", "testenv-lcr", "svc/testenv-lcr", "30123:30123"]]
        assert rsh.envs == [{"KUBECONFIG": "/tmp/kubeconfig"}]
        assert pf.started
        assert pf.pid() > 0
    finally:
        pf.stop()
    assert not pf.started
    assert pf.process is not None
    assert pf.process.poll() is not None


def test_stop_before_start() -> None:
    pf = _forwarder(FakeHost(["sleep", "30"]), True)
    pf.stop()
    assert pf.pid() == 0
    assert not pf.started


def test_local_endpoint() -> None:
    pf = _forwarder(FakeHost(["true"]), True, port=31000)
    assert pf.local_endpoint() == "127.0.0.1:31000"
    assert pf.local_port == 31000


def test_not_ready_stops_process() -> None:
    pf = _forwarder(FakeHost(["sleep", "30"]), False)
    with pytest.raises(TunnelNotReady):
        pf.start()
    assert not pf.started
    assert pf.process is not None
    assert pf.process.poll() is not None


def test_process_exit_is_reported() -> None:
    pf = _forwarder(FakeHost(["false"]), False)
    with pytest.raises(TunnelNotReady, match="exited"):
        pf.start()


def test_wait_without_process() -> None:
    pf = _forwarder(FakeHost(["sleep", "30"]), False)
    with pytest.raises(TunnelNotReady, match="never started"):
        pf._wait_ready(None)


def test_missing_binary() -> None:
    pf = _forwarder(FakeHost(["/nonexistent/kubectl"]), True)
    with pytest.raises(TunnelNotReady):
        pf.start()
    assert not pf.started


def test_active_tunnels() -> None:
    tunnels = ActiveTunnels()
    a = _forwarder(FakeHost(["sleep", "30"]), True)
    b = _forwarder(FakeHost(["sleep", "30"]), True)
    a.start()
    b.start()

    assert tunnels.put("test-1", a) is None
    assert tunnels.put("test-2", b) is None
    assert "test-1" in tunnels
    assert len(tunnels) == 2

    tunnels.discard("test-1", b)
    assert tunnels.get("test-1") is a

    assert tunnels.stop("test-1")
    assert not a.started
    assert not tunnels.stop("test-1")

    assert tunnels.stop_all() == 1
    assert not b.started
    assert len(tunnels) == 0
