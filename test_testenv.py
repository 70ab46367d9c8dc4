import pathlib
from typing import Any, Callable, Optional
import pytest

import testenv
import timer
from errors import BestEffortCleanupWarning, ConfigError, ImageProcessingError, LcrError, NodeConfigurationFailed, PreconditionMissing, SetupError, TunnelNotReady
from lcrConfig import KIND_CLUSTER_NAME_KEY, KIND_KUBECONFIG_KEY, Envs, LcrConfig, RegistryEndpoint
from portForward import ActiveTunnels
from portLease import MemoryLeaseStore, PortLeaseManager
from testenv import CreateInput, DeleteInput, Pipeline

TEST_ID = "test-20260101-abcd"
KIND_METADATA = {KIND_CLUSTER_NAME_KEY: "kind-test", KIND_KUBECONFIG_KEY: "/tmp/kubeconfig"}


class FakeForwarder:
    def __init__(self, kubeconfig: str, namespace: str, port: int, fail_start: bool = False) -> None:
        self.kubeconfig = kubeconfig
        self.namespace = namespace
        self.port = port
        self.started = False
        self.stops = 0
        self.fail_start = fail_start

    def start(self, cancel: Optional[timer.Cancel] = None) -> None:
        if self.fail_start:
            raise TunnelNotReady(f"port-forward on 127.0.0.1:{self.port} not ready")
        self.started = True

    def stop(self) -> None:
        self.started = False
        self.stops += 1


class FakeResources:
    def __init__(self, env: 'FakeEnv', client: Any, endpoint: RegistryEndpoint, config: LcrConfig, envs: Envs) -> None:
        self.env = env
        self.client = client
        self.endpoint = endpoint
        self.config = config

    def provision(self, cancel: Optional[timer.Cancel] = None) -> None:
        self.env.events.append("provision")
        if self.env.fail_provision is not None:
            raise self.env.fail_provision

    def await_registry(self, cancel: Optional[timer.Cancel] = None) -> None:
        self.env.events.append("await-registry")
        if self.env.fail_await is not None:
            raise self.env.fail_await

    def list_pull_secrets(self) -> list[tuple[str, str]]:
        return [(ns, self.config.image_pull_secret_name) for ns in self.config.image_pull_secret_namespaces]

    def teardown_steps(self, cancel: Optional[timer.Cancel] = None) -> list[tuple[str, Callable[[], object]]]:
        self.env.teardown_config = self.config

        def _step(name: str) -> Callable[[], object]:
            def _run() -> None:
                self.env.events.append(name)
                if name in self.env.fail_teardown:
                    raise LcrError(f"{name} exploded")

            return _run

        return [(name, _step(name)) for name in ("delete namespace", "remove CA certificate", "remove hosts entry")]


class FakeTrust:
    def __init__(self, env: 'FakeEnv') -> None:
        self.env = env

    def configure(self, cluster: str, endpoint: RegistryEndpoint, ca_crt_path: str, cancel: Optional[timer.Cancel] = None) -> list[object]:
        self.env.events.append("configure-trust")
        if self.env.fail_trust:
            raise NodeConfigurationFailed("kind-test-worker", "restart failed")
        return []


class FakeEnv:
    def __init__(self, config: LcrConfig) -> None:
        self.config = config
        self.store = MemoryLeaseStore()
        self.tunnels = ActiveTunnels()
        self.forwarders: list[FakeForwarder] = []
        self.events: list[str] = []
        self.fail_provision: Optional[Exception] = None
        self.fail_trust = False
        self.fail_await: Optional[Exception] = None
        self.fail_forwarder: Optional[int] = None
        self.fail_resources: Optional[Exception] = None
        self.fail_teardown: set[str] = set()
        self.port_available = True
        self.lease_managers = 0
        self.teardown_config: Optional[LcrConfig] = None

    def lease_manager(self) -> PortLeaseManager:
        self.lease_managers += 1
        return PortLeaseManager(self.store, live_owners=None, port_available=lambda port: self.port_available, timeout=1.0)

    def port_forwarder(self, kubeconfig: str, namespace: str, port: int) -> FakeForwarder:
        pf = FakeForwarder(kubeconfig, namespace, port, fail_start=len(self.forwarders) == self.fail_forwarder)
        self.forwarders.append(pf)
        return pf

    def resources(self, client: Any, endpoint: RegistryEndpoint, config: LcrConfig, envs: Envs) -> FakeResources:
        if self.fail_resources is not None:
            raise self.fail_resources
        return FakeResources(self, client, endpoint, config, envs)

    def pipeline(self) -> Pipeline:
        return Pipeline(
            read_config=lambda: self.config,
            read_envs=lambda: Envs(),
            lease_manager=self.lease_manager,
            k8s_client=lambda kubeconfig: object(),  # type: ignore
            resources=self.resources,  # type: ignore
            port_forwarder=self.port_forwarder,  # type: ignore
            trust=lambda client, endpoint: FakeTrust(self),  # type: ignore
            tunnels=self.tunnels,
        )


def _config(**kwargs: Any) -> LcrConfig:
    kwargs.setdefault("enabled", True)
    kwargs.setdefault("namespace", "lcr")
    return LcrConfig(**kwargs)


def _create_input(tmp_path: pathlib.Path, **kwargs: Any) -> CreateInput:
    kwargs.setdefault("metadata", dict(KIND_METADATA))
    return CreateInput(testID=TEST_ID, stage="e2e", tmpDir=str(tmp_path), **kwargs)


def test_disabled_never_leases(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config(enabled=False))
    artifact = env.pipeline().create(_create_input(tmp_path, metadata={}))
    assert artifact.to_dict() == {
        "testID": TEST_ID,
        "files": {},
        "metadata": {"testenv-lcr.enabled": "false"},
        "managedResources": [],
        "env": {},
    }
    assert env.lease_managers == 0
    assert env.events == []


def test_spec_can_enable(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config(enabled=False))
    artifact = env.pipeline().create(_create_input(tmp_path, spec={"enabled": True, "namespace": "from-spec"}))
    assert artifact.metadata["testenv-lcr.enabled"] == "true"
    assert artifact.metadata["testenv-lcr.namespace"] == "from-spec"


def test_create(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config(imagePullSecretNamespaces=["app", "web"]))
    pipeline = env.pipeline()
    artifact = pipeline.create(_create_input(tmp_path))

    port = int(artifact.metadata["testenv-lcr.port"])
    address = f"testenv-lcr.lcr.svc.cluster.local:{port}"
    ca = str(tmp_path / "ca.crt")
    creds = str(tmp_path / "registry-credentials.yaml")

    assert env.store.leases == {str(port): "kind-test"}
    assert env.events == ["provision", "configure-trust", "await-registry"]
    assert pipeline.state == testenv.SetupState.READY

    # The first tunnel died with containerd; the second one is the live one.
    first, second = env.forwarders
    assert not first.started
    assert second.started
    assert env.tunnels.get(TEST_ID) is second
    assert second.kubeconfig == "/tmp/kubeconfig"
    assert second.port == port

    assert artifact.metadata == {
        "testenv-lcr.registryFQDN": address,
        "testenv-lcr.namespace": "lcr",
        "testenv-lcr.caCrtPath": ca,
        "testenv-lcr.credentialPath": creds,
        "testenv-lcr.enabled": "true",
        "testenv-lcr.port": str(port),
        "testenv-lcr.imagePullSecret.0.namespace": "app",
        "testenv-lcr.imagePullSecret.0.secretName": "local-container-registry-credentials",
        "testenv-lcr.imagePullSecret.1.namespace": "web",
        "testenv-lcr.imagePullSecret.1.secretName": "local-container-registry-credentials",
        "testenv-lcr.imagePullSecretCount": "2",
    }
    assert artifact.env == {
        "TESTENV_LCR_FQDN": address,
        "TESTENV_LCR_HOST": "testenv-lcr.lcr.svc.cluster.local",
        "TESTENV_LCR_PORT": str(port),
        "TESTENV_LCR_NAMESPACE": "lcr",
        "TESTENV_LCR_CA_CERT": ca,
    }
    assert artifact.files == {"testenv-lcr.ca.crt": "ca.crt", "testenv-lcr.credentials.yaml": "registry-credentials.yaml"}
    assert artifact.managed_resources == [ca, creds]


def test_create_kubeconfig_from_env(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    metadata = {KIND_CLUSTER_NAME_KEY: "kind-test"}
    env.pipeline().create(_create_input(tmp_path, metadata=metadata, env={"KUBECONFIG": "/env/kubeconfig"}))
    assert env.forwarders[-1].kubeconfig == "/env/kubeconfig"


def test_missing_cluster_name(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    with pytest.raises(PreconditionMissing, match=KIND_CLUSTER_NAME_KEY):
        env.pipeline().create(_create_input(tmp_path, metadata={KIND_KUBECONFIG_KEY: "/tmp/kubeconfig"}))
    assert env.lease_managers == 0


def test_missing_kubeconfig(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    with pytest.raises(PreconditionMissing):
        env.pipeline().create(_create_input(tmp_path, metadata={KIND_CLUSTER_NAME_KEY: "kind-test"}))
    assert env.store.leases == {}


def test_invalid_images_rejected_before_anything(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    with pytest.raises(ConfigError, match="images"):
        env.pipeline().create(_create_input(tmp_path, spec={"images": [{"name": "nginx"}]}))
    assert env.lease_managers == 0


def test_acquire_failure(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.port_available = False
    with pytest.raises(SetupError) as ei:
        env.pipeline().create(_create_input(tmp_path))
    assert ei.value.stage == "acquire-port"
    assert env.events == []


def test_provision_failure_releases_port(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.fail_provision = LcrError("namespace quota")
    with pytest.raises(SetupError) as ei:
        env.pipeline().create(_create_input(tmp_path))
    assert ei.value.stage == "cluster-resources"
    assert "namespace quota" in str(ei.value)
    assert env.store.leases == {}
    assert env.forwarders == []


def test_trust_failure_rolls_back(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.fail_trust = True
    pipeline = env.pipeline()
    with pytest.raises(SetupError) as ei:
        pipeline.create(_create_input(tmp_path))

    assert ei.value.stage == "configure-trust"
    assert isinstance(ei.value.cause, NodeConfigurationFailed)
    assert env.store.leases == {}
    (pf,) = env.forwarders
    assert not pf.started
    assert TEST_ID not in env.tunnels
    assert "await-registry" not in env.events
    assert pipeline.state == testenv.SetupState.TUNNEL_UP


def _assert_rolled_back(env: FakeEnv) -> None:
    assert env.store.leases == {}
    assert TEST_ID not in env.tunnels
    assert env.forwarders
    assert not any(pf.started for pf in env.forwarders)


def test_await_registry_failure_rolls_back(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.fail_await = LcrError("deployment testenv-lcr not ready")
    with pytest.raises(SetupError) as ei:
        env.pipeline().create(_create_input(tmp_path))

    assert ei.value.stage == "await-registry"
    assert len(env.forwarders) == 1
    _assert_rolled_back(env)


def test_restart_tunnel_failure_rolls_back(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.fail_forwarder = 1
    pipeline = env.pipeline()
    with pytest.raises(SetupError) as ei:
        pipeline.create(_create_input(tmp_path))

    assert ei.value.stage == "restart-tunnel"
    assert isinstance(ei.value.cause, TunnelNotReady)
    assert len(env.forwarders) == 2
    assert pipeline.state == testenv.SetupState.READY_DISRUPTED
    _assert_rolled_back(env)


def test_process_images_failure_rolls_back(tmp_path: pathlib.Path) -> None:
    def _no_access(*args: Any) -> Any:
        raise ImageProcessingError("local image app:v1 not found")

    env = FakeEnv(_config(images=[{"name": "local://app:v1"}]))
    pipeline = env.pipeline()
    pipeline.registry_access = _no_access
    with pytest.raises(SetupError) as ei:
        pipeline.create(_create_input(tmp_path))

    assert ei.value.stage == "process-images"
    assert len(env.forwarders) == 2
    _assert_rolled_back(env)


def test_delete(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    artifact = env.pipeline().create(_create_input(tmp_path))
    live = env.forwarders[-1]

    metadata = {**KIND_METADATA, **artifact.metadata}
    failed = env.pipeline().delete(DeleteInput(testID=TEST_ID, metadata=metadata))

    assert failed == []
    assert not live.started
    assert TEST_ID not in env.tunnels
    assert env.store.leases == {}
    assert env.events[-3:] == ["delete namespace", "remove CA certificate", "remove hosts entry"]
    assert env.teardown_config is not None
    assert env.teardown_config.ca_crt_path == str(tmp_path / "ca.crt")


def test_delete_is_best_effort(tmp_path: pathlib.Path) -> None:
    env = FakeEnv(_config())
    env.store.leases = {"30100": "kind-test"}
    env.fail_teardown = {"delete namespace"}
    metadata = {**KIND_METADATA, "testenv-lcr.enabled": "true", "testenv-lcr.port": "30100", "testenv-lcr.namespace": "lcr"}

    with pytest.warns(BestEffortCleanupWarning, match="delete namespace"):
        failed = env.pipeline().delete(DeleteInput(testID=TEST_ID, metadata=metadata))

    assert failed == ["delete namespace"]
    assert env.events == ["delete namespace", "remove CA certificate", "remove hosts entry"]
    assert env.store.leases == {}


def test_delete_without_kubeconfig_still_cleans_up() -> None:
    env = FakeEnv(_config())
    metadata = {KIND_CLUSTER_NAME_KEY: "kind-test", "testenv-lcr.enabled": "true"}
    with pytest.warns(BestEffortCleanupWarning):
        failed = env.pipeline().delete(DeleteInput(testID=TEST_ID, metadata=metadata))
    assert failed == ["create kubernetes client"]
    assert "remove hosts entry" in env.events


def test_delete_releases_lease_when_teardown_cannot_be_prepared() -> None:
    env = FakeEnv(_config())
    env.store.leases = {"30100": "kind-test"}
    env.fail_resources = LcrError("invalid command prefix 'sudo \"': No closing quotation")
    metadata = {**KIND_METADATA, "testenv-lcr.enabled": "true", "testenv-lcr.port": "30100"}

    with pytest.warns(BestEffortCleanupWarning, match="invalid command prefix"):
        failed = env.pipeline().delete(DeleteInput(testID=TEST_ID, metadata=metadata))

    assert failed == ["prepare registry teardown"]
    assert env.store.leases == {}


def test_delete_disabled() -> None:
    env = FakeEnv(_config())
    assert env.pipeline().delete(DeleteInput(testID=TEST_ID, metadata={"testenv-lcr.enabled": "false"})) == []
    assert env.events == []
    assert env.lease_managers == 0

    env = FakeEnv(_config(enabled=False))
    assert env.pipeline().delete(DeleteInput(testID=TEST_ID)) == []
    assert env.events == []


def test_delete_config_error() -> None:
    def _broken() -> LcrConfig:
        raise ConfigError("bad yaml")

    env = FakeEnv(_config())
    pf = FakeForwarder("/tmp/kubeconfig", "lcr", 30100)
    pf.started = True
    env.tunnels.put(TEST_ID, pf)  # type: ignore
    pipeline = env.pipeline()
    pipeline.read_config = _broken

    with pytest.raises(ConfigError):
        pipeline.delete(DeleteInput(testID=TEST_ID, metadata=KIND_METADATA))
    assert pf.started
    assert env.events == []


def test_io_models_accept_aliases() -> None:
    inp = CreateInput.model_validate({"testID": "t", "tmpDir": "/tmp/x", "unknown": 1})
    assert inp.test_id == "t"
    assert inp.spec == {}
    assert DeleteInput.model_validate({"testID": "t"}).metadata == {}
