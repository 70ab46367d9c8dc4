"""
Cluster-side resources backing the registry, one adapter per provisioning stage.

Every adapter raises on the first problem during setup. Teardown steps are
run from a best-effort path and have to be safe to call when setup never ran.
"""
import base64
import json
import os
import secrets
import tempfile
from typing import Callable, Optional
import yaml
import host
import k8sClient
import timer
from common import atomic_write, render_template_to_string
from configLoader import StrictBaseModel
from errors import LcrError, ResourceProvisioningFailed
from lcrConfig import NAME, Envs, LcrConfig, RegistryEndpoint
from logger import logger

REGISTRY_IMAGE = "docker.io/library/registry:2"
HTPASSWD_IMAGE = "docker.io/library/httpd:2"
TLS_SECRET = f"{NAME}-tls"
AUTH_SECRET = f"{NAME}-auth"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
PULL_SECRET_SELECTOR = f"{MANAGED_BY_LABEL}={NAME}"
DEPLOYMENT_READY_TIMEOUT = "2m"
HOSTS_FILE = "/etc/hosts"


class K8sScaffolding:
    def __init__(self, client: k8sClient.K8sClient, namespace: str) -> None:
        self.client = client
        self.namespace = namespace

    def setup(self) -> None:
        self.client.ensure_namespace(self.namespace)

    def teardown(self, cancel: Optional[timer.Cancel] = None) -> None:
        self.client.delete_namespace(self.namespace, cancel=cancel)


class Credentials(StrictBaseModel):
    username: str
    password: str

    @staticmethod
    def generate() -> 'Credentials':
        return Credentials(username=f"{NAME}-{secrets.token_hex(4)}", password=secrets.token_urlsafe(24))

    @staticmethod
    def load(path: str) -> 'Credentials':
        with open(path) as f:
            return Credentials.model_validate(yaml.safe_load(f))

    def dump(self) -> str:
        return yaml.safe_dump(self.model_dump(), default_flow_style=False)


class Credential:
    """Registry login: an htpasswd secret in the cluster plus a YAML file on the host."""

    def __init__(self, client: k8sClient.K8sClient, engine: host.Host, container_engine: str, credential_path: str, namespace: str) -> None:
        self.client = client
        self.engine = engine
        self.container_engine = container_engine
        self.credential_path = credential_path
        self.namespace = namespace
        self.credentials: Optional[Credentials] = None

    def _htpasswd(self, creds: Credentials) -> str:
        ret = self.engine.run_or_raise(
            [
                self.container_engine,
                "run",
                "--rm",
                "--entrypoint",
                "htpasswd",
                HTPASSWD_IMAGE,
                "-Bbn",
                creds.username,
                creds.password,
            ]
        )
        line = ret.out.strip()
        if not line.startswith(f"{creds.username}:"):
            raise LcrError(f"unexpected htpasswd output: {line!r}")
        return line + "\n"

    def setup(self) -> None:
        creds = Credentials.generate()
        logger.info(f"Creating registry credentials for user {creds.username}")
        self.client.apply_secret(self.namespace, AUTH_SECRET, {"htpasswd": self._htpasswd(creds)})

        dir_path = os.path.dirname(self.credential_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        with atomic_write(self.credential_path, mode=0o600) as f:
            f.write(creds.dump())
        self.credentials = creds


class TLS:
    """Self-signed CA and a serving certificate for the registry FQDN."""

    def __init__(self, client: k8sClient.K8sClient, rsh: host.Host, ca_crt_path: str, namespace: str, fqdn: str) -> None:
        self.client = client
        self.rsh = rsh
        self.ca_crt_path = ca_crt_path
        self.namespace = namespace
        self.fqdn = fqdn

    def _openssl(self, args: list[str]) -> None:
        self.rsh.run_or_raise(["openssl", *args])

    def _generate(self, d: str) -> dict[str, str]:
        ca_key = os.path.join(d, "ca.key")
        ca_crt = os.path.join(d, "ca.crt")
        key = os.path.join(d, "tls.key")
        csr = os.path.join(d, "tls.csr")
        crt = os.path.join(d, "tls.crt")
        ext = os.path.join(d, "san.ext")

        self._openssl(["genrsa", "-out", ca_key, "4096"])
        self._openssl(["req", "-x509", "-new", "-nodes", "-sha256", "-days", "365", "-key", ca_key, "-out", ca_crt, "-subj", f"/CN={NAME}-ca"])
        self._openssl(["genrsa", "-out", key, "2048"])
        self._openssl(["req", "-new", "-key", key, "-out", csr, "-subj", f"/CN={self.fqdn}"])
        with open(ext, "w") as f:
            f.write(f"subjectAltName = DNS:{self.fqdn}\nextendedKeyUsage = serverAuth\n")
        self._openssl(["x509", "-req", "-sha256", "-days", "365", "-in", csr, "-CA", ca_crt, "-CAkey", ca_key, "-CAcreateserial", "-out", crt, "-extfile", ext])

        ret = {}
        for k, path in (("ca.crt", ca_crt), ("tls.crt", crt), ("tls.key", key)):
            with open(path) as f:
                ret[k] = f.read()
        return ret

    def setup(self) -> None:
        logger.info(f"Generating TLS material for {self.fqdn}")
        with tempfile.TemporaryDirectory(prefix=f"{NAME}-tls-") as d:
            material = self._generate(d)

        self.client.apply_secret(self.namespace, TLS_SECRET, material, secret_type="kubernetes.io/tls")

        dir_path = os.path.dirname(self.ca_crt_path)
        if dir_path:
            os.makedirs(dir_path, exist_ok=True)
        with atomic_write(self.ca_crt_path) as f:
            f.write(material["ca.crt"])
        logger.info(f"Exported registry CA to {self.ca_crt_path}")


class ContainerRegistry:
    def __init__(self, client: k8sClient.K8sClient, endpoint: RegistryEndpoint, image: str = REGISTRY_IMAGE) -> None:
        self.client = client
        self.endpoint = endpoint
        self.image = image

    @property
    def namespace(self) -> str:
        return self.endpoint.namespace

    def manifest(self) -> str:
        return render_template_to_string(
            "registry.yaml.j2",
            name=NAME,
            namespace=self.endpoint.namespace,
            fqdn=self.endpoint.fqdn,
            port=self.endpoint.port,
            image=self.image,
            tls_secret=TLS_SECRET,
            auth_secret=AUTH_SECRET,
        )

    def setup(self, cancel: Optional[timer.Cancel] = None) -> None:
        logger.info(f"Deploying registry {self.endpoint.address}")
        self.client.apply_manifest(self.manifest(), description="registry manifest")
        self.await_deployment(cancel)

    def await_deployment(self, cancel: Optional[timer.Cancel] = None, timeout: str = DEPLOYMENT_READY_TIMEOUT) -> None:
        self.client.wait_for_deployment(NAME, self.namespace, timeout=timeout, cancel=cancel)


class HostsEntry:
    """Resolves the registry FQDN to the tunnel on the host via /etc/hosts."""

    def __init__(self, fqdn: str, rsh: host.Host, hosts_file: str = HOSTS_FILE) -> None:
        self.fqdn = fqdn
        self.rsh = rsh
        self.hosts_file = hosts_file

    def line(self) -> str:
        return f"127.0.0.1 {self.fqdn} # {NAME}"

    def _is_ours(self, line: str) -> bool:
        fields = line.split("#", 1)[0].split()
        return len(fields) >= 2 and self.fqdn in fields[1:] and line.rstrip().endswith(f"# {NAME}")

    def add(self) -> bool:
        content = self.rsh.read_file(self.hosts_file) if self.rsh.exists(self.hosts_file) else ""
        if any(self._is_ours(line) for line in content.splitlines()):
            logger.debug(f"{self.hosts_file} already resolves {self.fqdn}")
            return False
        if content and not content.endswith("\n"):
            content += "\n"
        self.rsh.write(self.hosts_file, content + self.line() + "\n")
        logger.info(f"Added {self.fqdn} to {self.hosts_file}")
        return True

    def remove(self) -> bool:
        if not self.rsh.exists(self.hosts_file):
            return False
        lines = self.rsh.read_file(self.hosts_file).splitlines(keepends=True)
        kept = [line for line in lines if not self._is_ours(line)]
        if len(kept) == len(lines):
            return False
        self.rsh.write(self.hosts_file, "".join(kept))
        logger.info(f"Removed {self.fqdn} from {self.hosts_file}")
        return True


def remove_local_file(path: str) -> bool:
    if not path or not os.path.exists(path):
        return False
    os.remove(path)
    logger.debug(f"Removed {path}")
    return True


def docker_config_json(address: str, creds: Credentials) -> str:
    auth = base64.b64encode(f"{creds.username}:{creds.password}".encode()).decode()
    return json.dumps({"auths": {address: {"username": creds.username, "password": creds.password, "auth": auth}}})


class ImagePullSecret:
    def __init__(self, client: k8sClient.K8sClient, name: str, address: str, creds: Credentials, ca_crt: str) -> None:
        self.client = client
        self.name = name
        # Credentials are matched by the full address, port included.
        self.address = address
        self.creds = creds
        self.ca_crt = ca_crt

    def create(self, namespace: str) -> None:
        self.client.ensure_namespace(namespace)
        self.client.apply_secret(
            namespace,
            self.name,
            {".dockerconfigjson": docker_config_json(self.address, self.creds), "ca.crt": self.ca_crt},
            secret_type="kubernetes.io/dockerconfigjson",
            labels={MANAGED_BY_LABEL: NAME},
        )

    def create_in_namespaces(self, namespaces: list[str]) -> tuple[list[str], list[str]]:
        """Returns (created, failed) as "<namespace>/<name>" strings; failures are only logged."""
        created = []
        failed = []
        for ns in namespaces:
            try:
                self.create(ns)
            except Exception as e:
                logger.warning(f"Failed to create image pull secret {ns}/{self.name}: {e}")
                failed.append(f"{ns}/{self.name}")
            else:
                logger.info(f"Created image pull secret {ns}/{self.name}")
                created.append(f"{ns}/{self.name}")
        return created, failed


def list_image_pull_secrets(client: k8sClient.K8sClient, namespace: str = "") -> list[tuple[str, str]]:
    return client.list_secrets(PULL_SECRET_SELECTOR, namespace)


def container_engine_host(prepend_cmd: str) -> host.Host:
    try:
        return host.ElevatedHost(prepend_cmd) if prepend_cmd else host.LocalHost()
    except ValueError as e:
        raise LcrError(f"invalid command prefix {prepend_cmd!r}: {e}") from e


class ClusterResources:
    """The provisioning stages in their fixed order, plus their teardown."""

    def __init__(
        self,
        client: Optional[k8sClient.K8sClient],
        endpoint: RegistryEndpoint,
        config: LcrConfig,
        envs: Envs,
        rsh: Optional[host.Host] = None,
    ) -> None:
        self.client = client
        self.endpoint = endpoint
        self.config = config
        self.envs = envs
        self.rsh = rsh or host.LocalHost()
        self.credential: Optional[Credential] = None

    # A malformed prefix only fails the steps that use these hosts.
    @property
    def engine_host(self) -> host.Host:
        return container_engine_host(self.envs.prepend_cmd)

    @property
    def hosts_entry(self) -> HostsEntry:
        return HostsEntry(self.endpoint.fqdn, container_engine_host(self.envs.elevated_prepend_cmd))

    def _client(self) -> k8sClient.K8sClient:
        if self.client is None:
            raise LcrError("no kubernetes client available")
        return self.client

    def _stages(self, cancel: Optional[timer.Cancel]) -> list[tuple[str, Callable[[], object]]]:
        client = self._client()
        self.credential = Credential(client, self.engine_host, self.envs.container_engine, self.config.credential_path, self.endpoint.namespace)
        tls = TLS(client, self.rsh, self.config.ca_crt_path, self.endpoint.namespace, self.endpoint.fqdn)
        registry = ContainerRegistry(client, self.endpoint)
        return [
            ("scaffolding", K8sScaffolding(client, self.endpoint.namespace).setup),
            ("credentials", self.credential.setup),
            ("tls", tls.setup),
            ("registry", lambda: registry.setup(cancel)),
            ("hosts-entry", lambda: self.hosts_entry.add()),
            ("image-pull-secrets", self.create_pull_secrets),
        ]

    def provision(self, cancel: Optional[timer.Cancel] = None) -> None:
        for stage, fn in self._stages(cancel):
            if cancel is not None and cancel.done():
                raise ResourceProvisioningFailed(stage, LcrError(cancel.reason()))
            logger.info(f"Provisioning {stage}")
            try:
                fn()
            except Exception as e:
                raise ResourceProvisioningFailed(stage, e) from e

    def create_pull_secrets(self) -> list[str]:
        namespaces = self.config.image_pull_secret_namespaces
        if not namespaces:
            return []
        if self.credential is None or self.credential.credentials is None:
            logger.warning("No registry credentials, not creating image pull secrets")
            return []
        try:
            with open(self.config.ca_crt_path) as f:
                ca_crt = f.read()
        except OSError as e:
            logger.warning(f"Failed to read CA cert for image pull secrets: {e}")
            return []

        logger.info(f"Creating image pull secrets in {len(namespaces)} namespace(s)")
        secret = ImagePullSecret(self._client(), self.config.image_pull_secret_name, self.endpoint.address, self.credential.credentials, ca_crt)
        created, _ = secret.create_in_namespaces(namespaces)
        return created

    def await_registry(self, cancel: Optional[timer.Cancel] = None) -> None:
        ContainerRegistry(self._client(), self.endpoint).await_deployment(cancel)

    def list_pull_secrets(self) -> list[tuple[str, str]]:
        return list_image_pull_secrets(self._client())

    def delete_pull_secrets(self) -> None:
        client = self._client()
        for namespace, name in list_image_pull_secrets(client):
            if client.delete_secret(namespace, name):
                logger.info(f"Deleted image pull secret {namespace}/{name}")

    def teardown_steps(self, cancel: Optional[timer.Cancel] = None) -> list[tuple[str, Callable[[], object]]]:
        """Independent cleanup steps; the caller runs every one whatever the others do."""
        return [
            ("delete image pull secrets", self.delete_pull_secrets),
            ("delete namespace", lambda: K8sScaffolding(self._client(), self.endpoint.namespace).teardown(cancel)),
            ("remove CA certificate", lambda: remove_local_file(self.config.ca_crt_path)),
            ("remove credentials", lambda: remove_local_file(self.config.credential_path)),
            ("remove hosts entry", lambda: self.hosts_entry.remove()),
        ]
