import fnmatch
import os
import pathlib
import socket
import threading
import tomllib
import pytest
import yaml

import common
import lcrManifests
import timer


def _read_file(filename: str) -> str:
    with open(filename) as f:
        return f.read()


def test_atomic_write(tmp_path: pathlib.Path) -> None:

    user = os.geteuid()

    filename = str(tmp_path / "file1")
    with common.atomic_write(filename) as f:
        f.write("hello1")
        f.flush()
        d = os.listdir(str(tmp_path))
        assert len(d) == 1
        (filename_tmp,) = d
        assert filename_tmp.startswith("file1.")
        filename_tmp = str(tmp_path / filename_tmp)
        assert _read_file(filename_tmp) == "hello1"
        assert not os.path.exists(filename)

        st = os.stat(filename_tmp)
        assert st.st_mode == 0o100600
        assert st.st_uid == user

    assert os.path.exists(filename)
    assert not os.path.exists(filename_tmp)
    assert _read_file(filename) == "hello1"
    st = os.stat(filename)
    assert st.st_mode == 0o100644

    with common.atomic_write(filename) as f:
        f.write("hello1.2")
        f.flush()
        d = os.listdir(str(tmp_path))
        assert len(d) == 2
        assert "file1" in d
        assert _read_file(filename) == "hello1"

    assert _read_file(filename) == "hello1.2"
    assert os.listdir(str(tmp_path)) == ["file1"]

    filename = str(tmp_path / "file2")
    with common.atomic_write(filename, mode=0o600) as f:
        f.write("secret")
    assert os.stat(filename).st_mode == 0o100600


def test_atomic_write_failure_leaves_nothing(tmp_path: pathlib.Path) -> None:
    filename = str(tmp_path / "file1")
    with pytest.raises(RuntimeError):
        with common.atomic_write(filename) as f:
            f.write("partial")
            raise RuntimeError("boom")
    assert os.listdir(str(tmp_path)) == []


def test_render_template() -> None:
    out = common.render_template_to_string(
        "registry.yaml.j2",
        name="n",
        namespace="ns",
        fqdn="n.ns.svc.cluster.local",
        port=30001,
        image="registry:2",
        tls_secret="t",
        auth_secret="a",
    )
    assert len(list(yaml.safe_load_all(out))) == 3


def test_render_template_missing_variable() -> None:
    with pytest.raises(Exception, match="port"):
        common.render_template_to_string("registry.yaml.j2", name="n", namespace="ns", fqdn="f", image="i", tls_secret="t", auth_secret="a")


def test_templates_are_package_data() -> None:
    # Templates are loaded from the installed lcrManifests package, not the source checkout.
    assert common.TEMPLATE_DIR == os.path.dirname(os.path.abspath(lcrManifests.__file__))

    with open(os.path.join(os.path.dirname(os.path.abspath(__file__)), "pyproject.toml"), "rb") as f:
        setuptools_cfg = tomllib.load(f)["tool"]["setuptools"]
    assert "lcrManifests" in setuptools_cfg["packages"]
    patterns = setuptools_cfg["package-data"]["lcrManifests"]
    templates = [name for name in os.listdir(common.TEMPLATE_DIR) if name.endswith(".j2")]
    assert "registry.yaml.j2" in templates
    for name in templates:
        assert any(fnmatch.fnmatch(name, p) for p in patterns), name


def test_ports() -> None:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        s.bind(("127.0.0.1", 0))
        s.listen()
        port = s.getsockname()[1]
        assert common.tcp_port_open(port)
        assert not common.port_is_bindable(port)
    assert not common.tcp_port_open(port)


def test_wait_for_condition() -> None:
    calls = []

    def _third_time() -> bool:
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError("not yet")
        return len(calls) >= 3

    assert common.wait_for_condition(_third_time, "third call", timeout="5s", interval=0.01)
    assert len(calls) == 3

    assert not common.wait_for_condition(lambda: False, "never", timeout=0.05, interval=0.01)


def test_wait_for_condition_cancel() -> None:
    cancel = timer.background()
    threading.Timer(0.05, cancel.cancel).start()
    assert not common.wait_for_condition(lambda: False, "never", timeout="30s", interval="10s", cancel=cancel)
    assert cancel.cancelled()
