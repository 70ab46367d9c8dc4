import io
import json
import pathlib
from typing import Iterator
import pytest

import main
import testenv
from errors import LcrError
from lcrConfig import KIND_KUBECONFIG_KEY, Envs, LcrConfig
from portForward import active_tunnels


def _pipeline() -> testenv.Pipeline:
    def _no_leases() -> object:
        raise AssertionError("disabled registry must not lease a port")

    return testenv.Pipeline(read_config=lambda: LcrConfig(enabled=False), read_envs=lambda: Envs(), lease_manager=_no_leases)  # type: ignore


def test_handle_setup_disabled() -> None:
    result = main.handle(_pipeline(), "setup", {"testID": "t1", "tmpDir": "/tmp/t1"})
    assert result["metadata"] == {"testenv-lcr.enabled": "false"}


def test_handle_unknown_method() -> None:
    with pytest.raises(LcrError, match="unknown method"):
        main.handle(_pipeline(), "explode", {})


def test_serve() -> None:
    requests = [
        {"id": 1, "method": "setup", "params": {"testID": "t1", "tmpDir": "/tmp/t1"}},
        {"id": 2, "method": "teardown", "params": {"testID": "t1", "metadata": {"testenv-lcr.enabled": "false"}}},
        {"id": 3, "method": "setup", "params": {"tmpDir": "/tmp/t1"}},
        {"id": 4, "method": "nope"},
    ]
    stdin = io.StringIO("\n".join(json.dumps(r) for r in requests) + "\n\nnot json\n")
    stdout = io.StringIO()
    main.serve(_pipeline(), stdin, stdout)

    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [r["id"] for r in responses] == [1, 2, 3, 4, None]
    assert responses[0]["result"]["testID"] == "t1"
    assert responses[1]["result"] == {"failedSteps": []}
    assert responses[2]["error"]["type"] == "ValidationError"
    assert "unknown method" in responses[3]["error"]["message"]
    assert "error" in responses[4]


def test_main_setup_from_file(tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    config = tmp_path / "forge.yaml"
    config.write_text("localContainerRegistry:\n  enabled: false\n")
    inp = tmp_path / "input.json"
    inp.write_text(json.dumps({"testID": "t1", "tmpDir": str(tmp_path)}))
    # main() exports --config to the environment; monkeypatch undoes it afterwards.
    monkeypatch.setenv("TESTENV_LCR_CONFIG", "unused.yaml")

    assert main.main(["--config", str(config), "setup", "--input", str(inp)]) == 0
    out = json.loads(capsys.readouterr().out)
    assert out["metadata"] == {"testenv-lcr.enabled": "false"}


def test_main_bad_input(tmp_path: pathlib.Path, capsys: pytest.CaptureFixture[str]) -> None:
    inp = tmp_path / "input.json"
    inp.write_text("[1, 2]")
    assert main.main(["teardown", "-i", str(inp)]) == 1
    assert "error" in json.loads(capsys.readouterr().out)


def test_serve_survives_client_errors(tmp_path: pathlib.Path) -> None:
    kubeconfig = tmp_path / "kubeconfig"
    kubeconfig.write_text("{}")
    metadata = {KIND_KUBECONFIG_KEY: str(kubeconfig)}

    def _unreachable(path: str) -> object:
        raise RuntimeError("Max retries exceeded with url: /api/v1/secrets")

    class Tunnel:
        started = True

        def stop(self) -> None:
            self.started = False

    other = Tunnel()
    active_tunnels.put("other-test", other)  # type: ignore

    seen: list[bool] = []

    def _lines() -> Iterator[str]:
        yield json.dumps({"id": 1, "method": "list-image-pull-secrets", "params": {"testID": "t1", "metadata": metadata}}) + "\n"
        seen.append(other.started)
        yield json.dumps({"id": 2, "method": "setup", "params": {"testID": "t1", "tmpDir": str(tmp_path)}}) + "\n"
        seen.append(other.started)

    stdout = io.StringIO()
    main.serve(_pipeline(), _lines(), stdout)  # type: ignore

    responses = [json.loads(line) for line in stdout.getvalue().splitlines()]
    assert [r["id"] for r in responses] == [1, 2]
    assert responses[0]["error"]["type"] == "ConfigError"
    assert responses[1]["result"]["testID"] == "t1"
    assert seen == [True, True]
    assert not other.started

    pipeline = _pipeline()
    pipeline.k8s_client = _unreachable  # type: ignore
    stdout = io.StringIO()
    main.serve(pipeline, io.StringIO(json.dumps({"id": 3, "method": "list-image-pull-secrets", "params": {"testID": "t1", "metadata": metadata}}) + "\n"), stdout)
    assert json.loads(stdout.getvalue())["error"] == {"type": "RuntimeError", "message": "Max retries exceeded with url: /api/v1/secrets"}
