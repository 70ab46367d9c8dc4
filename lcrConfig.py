import os
from typing import Any, Mapping, Optional
from pydantic import BaseModel, ConfigDict, Field
import configLoader
from configLoader import StrictBaseModel
from errors import ConfigError

NAME = "testenv-lcr"

DEFAULT_NAMESPACE = NAME
DEFAULT_IMAGE_PULL_SECRET_NAME = "local-container-registry-credentials"
DEFAULT_CONFIG_PATH = "forge.yaml"
CONFIG_SECTION = "localContainerRegistry"

CA_CRT_FILENAME = "ca.crt"
CREDENTIALS_FILENAME = "registry-credentials.yaml"

# Metadata published by the kind test environment that runs before us.
KIND_CLUSTER_NAME_KEY = "testenv-kind.clusterName"
KIND_KUBECONFIG_KEY = "testenv-kind.kubeconfigPath"


def meta_key(name: str) -> str:
    return f"{NAME}.{name}"


class ValueFrom(StrictBaseModel):
    env_name: str = Field("", alias="envName")
    literal: str = ""


class BasicAuth(StrictBaseModel):
    username: ValueFrom
    password: ValueFrom


class ImageSource(StrictBaseModel):
    # local://name:tag or registry/path:tag
    name: str
    basic_auth: Optional[BasicAuth] = Field(None, alias="basicAuth")


class LcrConfig(StrictBaseModel):
    enabled: bool = False
    namespace: str = DEFAULT_NAMESPACE
    credential_path: str = Field("", alias="credentialPath")
    ca_crt_path: str = Field("", alias="caCrtPath")
    image_pull_secret_namespaces: list[str] = Field(default_factory=list, alias="imagePullSecretNamespaces")
    image_pull_secret_name: str = Field(DEFAULT_IMAGE_PULL_SECRET_NAME, alias="imagePullSecretName")
    images: list[ImageSource] = Field(default_factory=list)


class SpecOverrides(BaseModel):
    """The per-run `spec` handed to setup. Unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    enabled: Optional[bool] = None
    namespace: Optional[str] = None
    image_pull_secret_namespaces: Optional[list[str]] = Field(None, alias="imagePullSecretNamespaces")
    image_pull_secret_name: Optional[str] = Field(None, alias="imagePullSecretName")
    images: Optional[list[ImageSource]] = None


def config_path() -> str:
    return os.environ.get("TESTENV_LCR_CONFIG") or DEFAULT_CONFIG_PATH


def read_config(path: Optional[str] = None) -> LcrConfig:
    return configLoader.load(path or config_path(), LcrConfig, section=CONFIG_SECTION)


def apply_spec(config: LcrConfig, spec: Optional[Mapping[str, Any]]) -> LcrConfig:
    if not spec:
        return config
    overrides = configLoader.validate(SpecOverrides, dict(spec), source="spec")
    update = {k: v for k, v in overrides.model_dump(exclude_none=True).items()}
    if overrides.images is not None:
        update["images"] = list(overrides.images)
    if not update:
        return config
    return config.model_copy(update=update)


class Envs(StrictBaseModel):
    container_engine: str = "docker"
    prepend_cmd: str = ""
    elevated_prepend_cmd: str = ""

    @staticmethod
    def from_environ(environ: Optional[Mapping[str, str]] = None) -> 'Envs':
        environ = os.environ if environ is None else environ
        values: dict[str, str] = {}
        for field, var in (
            ("container_engine", "CONTAINER_ENGINE"),
            ("prepend_cmd", "PREPEND_CMD"),
            ("elevated_prepend_cmd", "ELEVATED_PREPEND_CMD"),
        ):
            if environ.get(var):
                values[field] = environ[var]
        try:
            return Envs(**values)
        except ValueError as e:
            raise ConfigError(f"invalid environment: {e}") from e

    def is_docker(self) -> bool:
        return "docker" in os.path.basename(self.container_engine)

    def is_podman(self) -> bool:
        return "podman" in os.path.basename(self.container_engine)


def registry_host(namespace: str) -> str:
    return f"{NAME}.{namespace}.svc.cluster.local"


class RegistryEndpoint(StrictBaseModel):
    namespace: str
    port: int

    @property
    def fqdn(self) -> str:
        return registry_host(self.namespace)

    @property
    def address(self) -> str:
        return f"{self.fqdn}:{self.port}"

    def __str__(self) -> str:
        return self.address
