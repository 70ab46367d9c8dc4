import dataclasses
import posixpath
import shlex
from typing import Callable, Optional
import host
import timer
from errors import CommandError, LcrError, NodeConfigurationFailed, NodeVerificationFailed
from lcrConfig import RegistryEndpoint
from logger import logger

CERTS_D = "/etc/containerd/certs.d"
NODE_HOSTS_FILE = "/etc/hosts"
# containerd needs a moment after a restart before the node is usable again.
RESTART_SETTLE = "2s"


def certs_dir(address: str) -> str:
    return posixpath.join(CERTS_D, address)


HOSTS_TOML = """server = "https://{address}"

[host."https://{address}"]
capabilities = ["pull", "resolve"]
ca = "{certs_dir}/ca.crt"
"""


def generate_hosts_toml(address: str) -> str:
    return HOSTS_TOML.format(address=address, certs_dir=certs_dir(address))


def list_kind_nodes(cluster: str, rsh: Optional[host.Host] = None) -> list[str]:
    rsh = rsh or host.LocalHost()
    ret = rsh.run_or_raise(["kind", "get", "nodes", "--name", cluster])
    return [line.strip() for line in ret.out.splitlines() if line.strip()]


@dataclasses.dataclass(kw_only=True)
class NodeOutcome:
    node: str
    configured: bool = False
    verified: bool = False
    error: str = ""


class ContainerdTrustConfigurator:
    """Makes every node's containerd trust the registry CA.

    Nodes are handled one at a time and the first failure stops the run. Nodes
    configured before the failure are left as they are; running again converges.
    """

    def __init__(
        self,
        rsh: Optional[host.Host] = None,
        *,
        node_runtime: str = "docker",
        list_nodes: Optional[Callable[[str], list[str]]] = None,
        resolve_cluster_ip: Optional[Callable[[], str]] = None,
        settle: str | float = RESTART_SETTLE,
    ) -> None:
        self.rsh = rsh or host.LocalHost()
        self.node_runtime = node_runtime
        self.list_nodes = list_nodes or (lambda cluster: list_kind_nodes(cluster, self.rsh))
        self.resolve_cluster_ip = resolve_cluster_ip
        self.settle = settle

    def _exec(self, node: str, args: list[str], input: Optional[str] = None) -> host.Result:
        cmd = [self.node_runtime, "exec"]
        if input is not None:
            cmd.append("-i")
        return self.rsh.run_or_raise(cmd + [node] + args, input=input)

    def _check(self, node: str, args: list[str]) -> bool:
        return self.rsh.run([self.node_runtime, "exec", node] + args).success()

    def configure_node(self, node: str, endpoint: RegistryEndpoint, ca_crt_path: str, cluster_ip: str, cancel: Optional[timer.Cancel] = None) -> None:
        d = certs_dir(endpoint.address)
        self._exec(node, ["mkdir", "-p", d])
        self.rsh.run_or_raise([self.node_runtime, "cp", ca_crt_path, f"{node}:{d}/ca.crt"])
        self._exec(node, ["sh", "-c", f"cat > {shlex.quote(d + '/hosts.toml')}"], input=generate_hosts_toml(endpoint.address))

        if cluster_ip:
            entry = f"{cluster_ip} {endpoint.fqdn}"
            script = f"grep -qF {shlex.quote(entry)} {NODE_HOSTS_FILE} || echo {shlex.quote(entry)} >> {NODE_HOSTS_FILE}"
            self._exec(node, ["sh", "-c", script])

        self._exec(node, ["systemctl", "restart", "containerd"])
        logger.info(f"Restarted containerd on node {node}")
        if timer.sleep_or_cancel(cancel, timer.to_seconds(self.settle)) and cancel is not None:
            raise LcrError(f"cancelled while containerd settles on node {node}: {cancel.reason()}")

    def verify_node(self, node: str, endpoint: RegistryEndpoint) -> None:
        d = certs_dir(endpoint.address)
        if not self._check(node, ["test", "-f", f"{d}/ca.crt"]):
            raise LcrError(f"ca.crt not found at {d}/ca.crt")
        if not self._check(node, ["test", "-f", f"{d}/hosts.toml"]):
            raise LcrError(f"hosts.toml not found at {d}/hosts.toml")
        if not self._check(node, ["grep", "-qF", endpoint.address, f"{d}/hosts.toml"]):
            raise LcrError(f"hosts.toml does not reference {endpoint.address}")

    def configure(self, cluster: str, endpoint: RegistryEndpoint, ca_crt_path: str, cancel: Optional[timer.Cancel] = None) -> list[NodeOutcome]:
        try:
            nodes = self.list_nodes(cluster)
        except (CommandError, OSError) as e:
            raise NodeConfigurationFailed("<none>", f"failed to list nodes of cluster {cluster}: {e}") from e
        if not nodes:
            raise NodeConfigurationFailed("<none>", f"no nodes found for cluster {cluster}")

        cluster_ip = ""
        if self.resolve_cluster_ip is not None:
            try:
                cluster_ip = self.resolve_cluster_ip()
            except Exception as e:
                raise NodeConfigurationFailed(nodes[0], f"cannot resolve registry cluster IP: {e}") from e

        outcomes: list[NodeOutcome] = []
        for node in nodes:
            outcome = NodeOutcome(node=node)
            outcomes.append(outcome)
            logger.info(f"Configuring containerd trust on node {node}")

            try:
                self.configure_node(node, endpoint, ca_crt_path, cluster_ip, cancel)
            except (LcrError, OSError) as e:
                outcome.error = str(e)
                raise NodeConfigurationFailed(node, outcome.error, outcomes) from e
            outcome.configured = True

            try:
                self.verify_node(node, endpoint)
            except LcrError as e:
                outcome.error = str(e)
                raise NodeVerificationFailed(node, outcome.error, outcomes) from e
            outcome.verified = True
            logger.info(f"Verified containerd trust on node {node}")

        logger.info(f"Configured containerd trust on all {len(nodes)} nodes of {cluster}")
        return outcomes
