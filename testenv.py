"""
Setup and teardown of the local container registry for one test environment.

Setup is fail-fast: the first failing stage stops the run, the tunnel and
the port lease are given back, and a single SetupError naming the stage is
raised. Teardown is best effort: every step runs, failures are only warned
about.
"""
import os
import warnings
from enum import Enum
from typing import Any, Callable, Optional
from pydantic import BaseModel, ConfigDict, Field
import yaml
import images
import k8sClient
import lcrConfig
import registryResources
import timer
from containerdTrust import ContainerdTrustConfigurator
from errors import BestEffortCleanupWarning, ConfigError, LcrError, PreconditionMissing, SetupError
from lcrConfig import (
    CA_CRT_FILENAME,
    CREDENTIALS_FILENAME,
    KIND_CLUSTER_NAME_KEY,
    KIND_KUBECONFIG_KEY,
    NAME,
    Envs,
    LcrConfig,
    RegistryEndpoint,
    meta_key,
)
from logger import logger
from portForward import ActiveTunnels, PortForwarder, active_tunnels
from portLease import PortLeaseManager
from registryResources import ClusterResources, Credentials, ImagePullSecret


class _IOModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class CreateInput(_IOModel):
    test_id: str = Field(alias="testID")
    stage: str = ""
    tmp_dir: str = Field(alias="tmpDir")
    root_dir: str = Field("", alias="rootDir")
    spec: dict[str, Any] = Field(default_factory=dict)
    env: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)


class DeleteInput(_IOModel):
    test_id: str = Field(alias="testID")
    metadata: dict[str, str] = Field(default_factory=dict)


class TestEnvArtifact(_IOModel):
    test_id: str = Field(alias="testID")
    files: dict[str, str] = Field(default_factory=dict)
    metadata: dict[str, str] = Field(default_factory=dict)
    managed_resources: list[str] = Field(default_factory=list, alias="managedResources")
    env: dict[str, str] = Field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class Stage(str, Enum):
    ACQUIRE_PORT = "acquire-port"
    CLUSTER_RESOURCES = "cluster-resources"
    START_TUNNEL = "start-tunnel"
    CONFIGURE_TRUST = "configure-trust"
    AWAIT_REGISTRY = "await-registry"
    RESTART_TUNNEL = "restart-tunnel"
    PROCESS_IMAGES = "process-images"
    ASSEMBLE_ARTIFACT = "assemble-artifact"


class SetupState(str, Enum):
    NOT_STARTED = "NotStarted"
    PORT_ACQUIRED = "PortAcquired"
    CLUSTER_RESOURCES_READY = "ClusterResourcesReady"
    TUNNEL_UP = "TunnelUp"
    TRUST_CONFIGURED = "TrustConfigured"
    READY_DISRUPTED = "Ready(disrupted)"
    TUNNEL_UP2 = "TunnelUp2"
    READY = "Ready"


def disabled_artifact(test_id: str) -> TestEnvArtifact:
    return TestEnvArtifact(testID=test_id, files={}, metadata={meta_key("enabled"): "false"}, managedResources=[])


def resolve_kubeconfig(env: dict[str, str], metadata: dict[str, str]) -> str:
    return env.get("KUBECONFIG") or metadata.get(KIND_KUBECONFIG_KEY, "")


class Pipeline:
    def __init__(
        self,
        *,
        read_config: Callable[[], LcrConfig] = lcrConfig.read_config,
        read_envs: Callable[[], Envs] = Envs.from_environ,
        lease_manager: Optional[Callable[[], PortLeaseManager]] = None,
        k8s_client: Callable[[str], k8sClient.K8sClient] = k8sClient.K8sClient,
        resources: Callable[..., ClusterResources] = ClusterResources,
        port_forwarder: Callable[[str, str, int], PortForwarder] = PortForwarder,
        trust: Optional[Callable[[k8sClient.K8sClient, RegistryEndpoint], ContainerdTrustConfigurator]] = None,
        registry_access: Callable[..., images.RegistryAccess] = images.RegistryAccess,
        tunnels: ActiveTunnels = active_tunnels,
    ) -> None:
        self.read_config = read_config
        self.read_envs = read_envs
        self.lease_manager = lease_manager or PortLeaseManager
        self.k8s_client = k8s_client
        self.resources = resources
        self.port_forwarder = port_forwarder
        self.trust = trust or _default_trust
        self.registry_access = registry_access
        self.tunnels = tunnels
        self.state = SetupState.NOT_STARTED

    def _advance(self, state: SetupState) -> None:
        logger.debug(f"{NAME}: {self.state.value} -> {state.value}")
        self.state = state

    def _start_tunnel(self, test_id: str, kubeconfig: str, endpoint: RegistryEndpoint, cancel: Optional[timer.Cancel]) -> PortForwarder:
        pf = self.port_forwarder(kubeconfig, endpoint.namespace, endpoint.port)
        pf.start(cancel)
        previous = self.tunnels.put(test_id, pf)
        if previous is not None and previous is not pf:
            previous.stop()
        return pf

    def _rollback(self, test_id: str, forwarder: Optional[PortForwarder], leases: PortLeaseManager, cluster: str) -> None:
        registered = self.tunnels.pop(test_id)
        for pf in (forwarder, registered):
            if pf is not None:
                pf.stop()
        try:
            leases.release_port(cluster)
        except LcrError as e:
            logger.warning(f"Failed to release port lease of {cluster} during rollback: {e}")

    def create(self, inp: CreateInput, cancel: Optional[timer.Cancel] = None) -> TestEnvArtifact:
        logger.info(f"Creating local container registry: testID={inp.test_id}, stage={inp.stage}")
        self.state = SetupState.NOT_STARTED

        config = lcrConfig.apply_spec(self.read_config(), inp.spec)
        images.validate_images(config.images)

        if not config.enabled:
            logger.info("Local container registry is disabled, skipping setup")
            return disabled_artifact(inp.test_id)

        cluster = inp.metadata.get(KIND_CLUSTER_NAME_KEY, "")
        if not cluster:
            raise PreconditionMissing(f"missing {KIND_CLUSTER_NAME_KEY} in metadata: the kind test environment must run first")

        kubeconfig = resolve_kubeconfig(inp.env, inp.metadata)
        if not kubeconfig:
            raise PreconditionMissing(f"no KUBECONFIG in env and no {KIND_KUBECONFIG_KEY} in metadata")

        envs = self.read_envs()
        ca_crt_path = os.path.join(inp.tmp_dir, CA_CRT_FILENAME)
        credential_path = os.path.join(inp.tmp_dir, CREDENTIALS_FILENAME)
        config = config.model_copy(update={"ca_crt_path": ca_crt_path, "credential_path": credential_path})

        leases = self.lease_manager()
        stage = Stage.ACQUIRE_PORT
        try:
            port = leases.acquire_port(cluster, cancel)
        except LcrError as e:
            raise SetupError(stage.value, e) from e
        self._advance(SetupState.PORT_ACQUIRED)
        logger.info(f"Acquired port {port} for cluster {cluster}")

        endpoint = RegistryEndpoint(namespace=config.namespace, port=port)
        forwarder: Optional[PortForwarder] = None
        try:
            stage = Stage.CLUSTER_RESOURCES
            client = self.k8s_client(kubeconfig)
            resources = self.resources(client, endpoint, config, envs)
            resources.provision(cancel)
            self._advance(SetupState.CLUSTER_RESOURCES_READY)

            stage = Stage.START_TUNNEL
            forwarder = self._start_tunnel(inp.test_id, kubeconfig, endpoint, cancel)
            self._advance(SetupState.TUNNEL_UP)

            stage = Stage.CONFIGURE_TRUST
            self.trust(client, endpoint).configure(cluster, endpoint, ca_crt_path, cancel)
            self._advance(SetupState.TRUST_CONFIGURED)

            # Restarting containerd took the registry pod down with the rest of the
            # cluster, so the tunnel is dead.
            self._advance(SetupState.READY_DISRUPTED)
            stage = Stage.AWAIT_REGISTRY
            forwarder.stop()
            resources.await_registry(cancel)

            stage = Stage.RESTART_TUNNEL
            forwarder = self._start_tunnel(inp.test_id, kubeconfig, endpoint, cancel)
            self._advance(SetupState.TUNNEL_UP2)

            stage = Stage.PROCESS_IMAGES
            if config.images:
                access = self.registry_access(endpoint, envs, ca_crt_path, credential_path)
                images.process_images(config.images, access, cancel)

            stage = Stage.ASSEMBLE_ARTIFACT
            artifact = self._artifact(inp.test_id, config, endpoint, resources)
            self._advance(SetupState.READY)
        except Exception as e:
            logger.error(f"Setup of {NAME} failed at stage {stage.value}: {e}")
            self._rollback(inp.test_id, forwarder, leases, cluster)
            raise SetupError(stage.value, e) from e

        logger.info(f"Local container registry ready at {endpoint.address}")
        return artifact

    def _artifact(self, test_id: str, config: LcrConfig, endpoint: RegistryEndpoint, resources: ClusterResources) -> TestEnvArtifact:
        metadata = {
            meta_key("registryFQDN"): endpoint.address,
            meta_key("namespace"): endpoint.namespace,
            meta_key("caCrtPath"): config.ca_crt_path,
            meta_key("credentialPath"): config.credential_path,
            meta_key("enabled"): "true",
            meta_key("port"): str(endpoint.port),
        }

        if config.image_pull_secret_namespaces:
            try:
                secrets = resources.list_pull_secrets()
            except Exception as e:
                logger.warning(f"Failed to list image pull secrets: {e}")
            else:
                for i, (namespace, name) in enumerate(secrets):
                    metadata[meta_key(f"imagePullSecret.{i}.namespace")] = namespace
                    metadata[meta_key(f"imagePullSecret.{i}.secretName")] = name
                if secrets:
                    metadata[meta_key("imagePullSecretCount")] = str(len(secrets))

        return TestEnvArtifact(
            testID=test_id,
            files={
                f"{NAME}.{CA_CRT_FILENAME}": CA_CRT_FILENAME,
                f"{NAME}.credentials.yaml": CREDENTIALS_FILENAME,
            },
            metadata=metadata,
            managedResources=[config.ca_crt_path, config.credential_path],
            env={
                "TESTENV_LCR_FQDN": endpoint.address,
                "TESTENV_LCR_HOST": endpoint.fqdn,
                "TESTENV_LCR_PORT": str(endpoint.port),
                "TESTENV_LCR_NAMESPACE": endpoint.namespace,
                "TESTENV_LCR_CA_CERT": config.ca_crt_path,
            },
        )

    def _best_effort(self, description: str, fn: Callable[[], object]) -> bool:
        try:
            fn()
        except Exception as e:
            msg = f"{description} failed: {e}"
            logger.warning(msg)
            warnings.warn(msg, BestEffortCleanupWarning, stacklevel=2)
            return False
        return True

    def delete(self, inp: DeleteInput, cancel: Optional[timer.Cancel] = None) -> list[str]:
        """Tears everything down. Returns the steps that failed, which were only logged."""
        logger.info(f"Deleting local container registry: testID={inp.test_id}")
        metadata = inp.metadata
        if metadata.get(meta_key("enabled")) == "false":
            logger.info("Local container registry was disabled, skipping teardown")
            return []

        config = self.read_config()

        if self.tunnels.stop(inp.test_id):
            logger.info(f"Stopped port-forward for testID={inp.test_id}")

        if not config.enabled and metadata.get(meta_key("enabled")) != "true":
            logger.info("Local container registry is disabled, skipping teardown")
            return []

        update = {
            "namespace": metadata.get(meta_key("namespace")) or config.namespace,
            "ca_crt_path": metadata.get(meta_key("caCrtPath")) or config.ca_crt_path,
            "credential_path": metadata.get(meta_key("credentialPath")) or config.credential_path,
        }
        config = config.model_copy(update=update)
        try:
            port = int(metadata.get(meta_key("port"), "0"))
        except ValueError:
            port = 0
        endpoint = RegistryEndpoint(namespace=config.namespace, port=port)

        failed: list[str] = []

        def step(description: str, fn: Callable[[], object]) -> None:
            if not self._best_effort(description, fn):
                failed.append(description)

        client: Optional[k8sClient.K8sClient] = None
        kubeconfig = metadata.get(KIND_KUBECONFIG_KEY, "")

        def _connect() -> None:
            nonlocal client
            if not kubeconfig:
                raise PreconditionMissing(f"no {KIND_KUBECONFIG_KEY} in metadata")
            client = self.k8s_client(kubeconfig)

        step("create kubernetes client", _connect)

        resources: Optional[ClusterResources] = None

        def _prepare() -> None:
            nonlocal resources
            resources = self.resources(client, endpoint, config, self.read_envs())

        step("prepare registry teardown", _prepare)
        if resources is not None:
            for description, fn in resources.teardown_steps(cancel):
                step(description, fn)

        cluster = metadata.get(KIND_CLUSTER_NAME_KEY, "")
        if cluster:
            step(f"release port lease of {cluster}", lambda: self.lease_manager().release_port(cluster, cancel))

        if failed:
            logger.warning(f"Teardown of {NAME} finished with {len(failed)} failed step(s): {', '.join(failed)}")
        else:
            logger.info(f"Torn down {NAME} successfully")
        return failed


def _default_trust(client: k8sClient.K8sClient, endpoint: RegistryEndpoint) -> ContainerdTrustConfigurator:
    return ContainerdTrustConfigurator(resolve_cluster_ip=lambda: client.get_service_cluster_ip(NAME, endpoint.namespace))


class CreateImagePullSecretInput(_IOModel):
    test_id: str = Field(alias="testID")
    namespace: str
    secret_name: str = Field("", alias="secretName")
    metadata: dict[str, str] = Field(default_factory=dict)


class ListImagePullSecretsInput(_IOModel):
    test_id: str = Field(alias="testID")
    namespace: str = ""
    metadata: dict[str, str] = Field(default_factory=dict)


def create_image_pull_secret(
    inp: CreateImagePullSecretInput,
    *,
    read_config: Callable[[], LcrConfig] = lcrConfig.read_config,
    k8s_client: Callable[[str], k8sClient.K8sClient] = k8sClient.K8sClient,
) -> str:
    """Adds a pull secret for an already provisioned registry. Returns "<namespace>/<name>"."""
    if not inp.test_id or not inp.namespace:
        raise ConfigError("testID and namespace are required")
    config = read_config()
    if not config.enabled and inp.metadata.get(meta_key("enabled")) != "true":
        raise ConfigError("local container registry is disabled")

    address = inp.metadata.get(meta_key("registryFQDN"), "")
    if not address:
        raise PreconditionMissing(f"missing {meta_key('registryFQDN')} in metadata")
    kubeconfig = inp.metadata.get(KIND_KUBECONFIG_KEY, "")
    if not kubeconfig:
        raise PreconditionMissing(f"missing {KIND_KUBECONFIG_KEY} in metadata")

    ca_crt_path = inp.metadata.get(meta_key("caCrtPath")) or config.ca_crt_path
    credential_path = inp.metadata.get(meta_key("credentialPath")) or config.credential_path
    try:
        with open(ca_crt_path) as f:
            ca_crt = f.read()
        creds = Credentials.load(credential_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        raise PreconditionMissing(f"cannot read registry CA or credentials: {e}") from e

    name = inp.secret_name or config.image_pull_secret_name
    ImagePullSecret(k8s_client(kubeconfig), name, address, creds, ca_crt).create(inp.namespace)
    logger.info(f"Created image pull secret {inp.namespace}/{name}")
    return f"{inp.namespace}/{name}"


def list_image_pull_secrets(
    inp: ListImagePullSecretsInput,
    *,
    k8s_client: Callable[[str], k8sClient.K8sClient] = k8sClient.K8sClient,
) -> list[tuple[str, str]]:
    if not inp.test_id:
        raise ConfigError("testID is required")
    kubeconfig = inp.metadata.get(KIND_KUBECONFIG_KEY, "")
    if not kubeconfig:
        raise PreconditionMissing(f"missing {KIND_KUBECONFIG_KEY} in metadata")
    return registryResources.list_image_pull_secrets(k8s_client(kubeconfig), inp.namespace)
