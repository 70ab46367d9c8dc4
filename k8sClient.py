import kubernetes
import yaml
import host
import tenacity
import timer
from typing import Optional
from kubernetes.client.exceptions import ApiException
from common import wait_for_condition
from errors import CommandError, ConfigError, LcrError
from logger import logger


class K8sClient:
    def __init__(self, kubeconfig: str, rsh: Optional[host.Host] = None):
        self._kc = kubeconfig
        self._host = rsh or host.LocalHost()
        try:
            c = yaml.safe_load(self._host.read_file(kubeconfig))
        except (OSError, yaml.YAMLError, CommandError) as e:
            raise ConfigError(f"failed to load kubeconfig {kubeconfig}: {e}") from e
        try:
            self._api_client = kubernetes.config.new_client_from_config_dict(c)
        except kubernetes.config.ConfigException as e:
            raise ConfigError(f"invalid kubeconfig {kubeconfig}: {e}") from e
        self._client = kubernetes.client.CoreV1Api(self._api_client)
        self._apps = kubernetes.client.AppsV1Api(self._api_client)

    def kubectl(self, args: list[str], must_succeed: bool = False, input: Optional[str] = None) -> host.Result:
        cmd = ["kubectl", *args, "--kubeconfig", self._kc]
        if must_succeed:
            return self._host.run_or_raise(cmd, input=input)
        return self._host.run(cmd, input=input)

    def kubectl_or_raise(self, args: list[str], input: Optional[str] = None) -> host.Result:
        return self.kubectl(args, must_succeed=True, input=input)

    def ensure_namespace(self, name: str) -> bool:
        """Creates the namespace if missing. Returns True when it was created."""
        try:
            self._client.read_namespace(name)
            return False
        except ApiException as e:
            if e.status != 404:
                raise
        body = kubernetes.client.V1Namespace(metadata=kubernetes.client.V1ObjectMeta(name=name))
        try:
            self._client.create_namespace(body)
        except ApiException as e:
            if e.status == 409:
                return False
            raise
        logger.info(f"Created namespace {name}")
        return True

    def delete_namespace(self, name: str, timeout: str = "2m", cancel: Optional[timer.Cancel] = None) -> None:
        try:
            self._client.delete_namespace(name)
        except ApiException as e:
            if e.status == 404:
                logger.debug(f"Namespace {name} already gone")
                return
            raise
        if not wait_for_condition(lambda: not self.namespace_exists(name), f"namespace {name} to be deleted", timeout=timeout, interval="2s", cancel=cancel):
            raise LcrError(f"namespace {name} still exists after {timeout}")
        logger.info(f"Deleted namespace {name}")

    def namespace_exists(self, name: str) -> bool:
        try:
            self._client.read_namespace(name)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    def apply_secret(
        self,
        namespace: str,
        name: str,
        string_data: dict[str, str],
        secret_type: str = "Opaque",
        labels: Optional[dict[str, str]] = None,
    ) -> None:
        body = kubernetes.client.V1Secret(
            metadata=kubernetes.client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
            type=secret_type,
            string_data=string_data,
        )
        try:
            self._client.create_namespaced_secret(namespace, body)
            logger.debug(f"Created secret {namespace}/{name}")
        except ApiException as e:
            if e.status != 409:
                raise
            self._client.replace_namespaced_secret(name, namespace, body)
            logger.debug(f"Replaced secret {namespace}/{name}")

    def delete_secret(self, namespace: str, name: str) -> bool:
        try:
            self._client.delete_namespaced_secret(name, namespace)
            return True
        except ApiException as e:
            if e.status == 404:
                return False
            raise

    @tenacity.retry(
        wait=tenacity.wait_fixed(2),
        stop=tenacity.stop_after_attempt(5),
        retry=tenacity.retry_if_exception_type(ApiException),
        reraise=True,
    )
    def list_secrets(self, label_selector: str, namespace: str = "") -> list[tuple[str, str]]:
        """(namespace, name) of every secret matching `label_selector`, in all namespaces when none is given."""
        if namespace:
            items = self._client.list_namespaced_secret(namespace, label_selector=label_selector).items
        else:
            items = self._client.list_secret_for_all_namespaces(label_selector=label_selector).items
        return [(s.metadata.namespace, s.metadata.name) for s in items]

    def apply_manifest(self, content: str, description: str = "manifest") -> None:
        logger.debug(f"Applying {description}")
        self.kubectl_or_raise(["apply", "-f", "-"], input=content)

    def deployment_ready(self, name: str, namespace: str) -> bool:
        try:
            d = self._apps.read_namespaced_deployment_status(name, namespace)
        except ApiException as e:
            if e.status == 404:
                return False
            raise
        desired = d.spec.replicas if d.spec.replicas is not None else 1
        ready = d.status.ready_replicas or 0
        return bool(ready >= desired and (d.status.updated_replicas or 0) >= desired)

    def wait_for_deployment(self, name: str, namespace: str, timeout: str = "2m", cancel: Optional[timer.Cancel] = None) -> None:
        logger.info(f"Waiting for deployment {namespace}/{name} to be ready")
        if not wait_for_condition(lambda: self.deployment_ready(name, namespace), f"deployment {namespace}/{name} to be ready", timeout=timeout, interval="1s", cancel=cancel):
            raise LcrError(f"deployment {namespace}/{name} not ready after {timeout}")

    @tenacity.retry(
        wait=tenacity.wait_fixed(2),
        stop=tenacity.stop_after_attempt(5),
        retry=tenacity.retry_if_exception_type((ApiException, LcrError)),
        reraise=True,
    )
    def get_service_cluster_ip(self, name: str, namespace: str) -> str:
        svc = self._client.read_namespaced_service(name, namespace)
        ip = svc.spec.cluster_ip
        if not ip or ip == "None":
            raise LcrError(f"service {namespace}/{name} has no cluster IP")
        return str(ip)
