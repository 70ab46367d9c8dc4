"""
Pushes configured images into the freshly provisioned registry.

Images are named either `local://name:tag` (already present in the local
container engine) or as a remote reference with an explicit tag, which is
pulled first. Every image ends up as `<registry address>/<name:tag>`.
"""
import contextlib
import dataclasses
import os
import posixpath
from enum import Enum
from typing import Iterator, Mapping, Optional
import requests
import yaml
import host
import timer
from common import tcp_port_open, wait_for_condition
from errors import CommandError, ConfigError, ImageProcessingError
from lcrConfig import Envs, ImageSource, RegistryEndpoint, ValueFrom
from logger import logger
from registryResources import Credentials

LOCAL_PREFIX = "local://"
DEFAULT_REGISTRY = "docker.io"
DOCKER_CERTS_D = "/etc/docker/certs.d"
CONNECT_TIMEOUT = "30s"
CONNECT_INTERVAL = 0.5
HTTP_READY_TIMEOUT = "1m"


class ImageType(str, Enum):
    LOCAL = "local"
    """Already present in the local container engine."""

    REMOTE = "remote"
    """Pulled from its registry before being pushed."""


@dataclasses.dataclass(frozen=True)
class ParsedImage:
    type: ImageType
    original_name: str
    # Name without the local:// prefix; as-is for remote images.
    image_name: str
    # Registry domain of a remote image, empty for local ones.
    registry: str


def validate_value_from(vf: ValueFrom, field: str) -> None:
    has_env = vf.env_name != ""
    has_lit = vf.literal != ""
    if has_env and has_lit:
        raise ConfigError(f"{field}: cannot specify both envName and literal")
    if not has_env and not has_lit:
        raise ConfigError(f"{field}: must specify either envName or literal")


def validate_image_source(img: ImageSource) -> None:
    if not img.name:
        raise ConfigError("name must not be empty")

    if img.name.startswith(LOCAL_PREFIX):
        after = img.name[len(LOCAL_PREFIX):]
        if not after:
            raise ConfigError("local:// prefix requires image name")
        if ":" not in after:
            raise ConfigError("local:// image must include tag (e.g., local://myapp:v1)")
        name_part = after.split(":")[0]
        if "/" in name_part or "." in name_part:
            raise ConfigError("local:// image name must not contain registry domain or slashes")
    elif ":" not in img.name:
        raise ConfigError("remote image must include tag (no :latest inference)")

    if img.basic_auth is not None:
        try:
            validate_value_from(img.basic_auth.username, "username")
            validate_value_from(img.basic_auth.password, "password")
        except ConfigError as e:
            raise ConfigError(f"basicAuth: {e}") from e


def validate_images(images: list[ImageSource]) -> None:
    seen: set[str] = set()
    for i, img in enumerate(images):
        if img.name in seen:
            raise ConfigError(f"duplicate image in images: {img.name!r}")
        seen.add(img.name)
        try:
            validate_image_source(img)
        except ConfigError as e:
            raise ConfigError(f"images[{i}]: {e}") from e


def parse_image_name(name: str) -> ParsedImage:
    if name.startswith(LOCAL_PREFIX):
        return ParsedImage(ImageType.LOCAL, name, name[len(LOCAL_PREFIX):], "")

    registry = DEFAULT_REGISTRY
    if "/" in name:
        first = name.split("/", 1)[0]
        if "." in first or ":" in first:
            registry = first
    return ParsedImage(ImageType.REMOTE, name, name, registry)


def resolve_value_from(vf: ValueFrom, field: str, environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    if vf.env_name:
        if vf.env_name not in environ:
            raise ImageProcessingError(f"{field}: environment variable {vf.env_name!r} not set")
        value = environ[vf.env_name]
        if not value:
            raise ImageProcessingError(f"{field}: environment variable {vf.env_name!r} is empty")
        return value
    if vf.literal:
        return vf.literal
    raise ImageProcessingError(f"{field}: neither envName nor literal set")


def wait_for_http_ready(url: str, ca_crt_path: str, timeout: str = HTTP_READY_TIMEOUT, cancel: Optional[timer.Cancel] = None, expected_codes: tuple[int, ...] = (200, 401)) -> None:
    """Waits until `url` answers over TLS signed by `ca_crt_path` with one of `expected_codes`."""

    def _ready() -> bool:
        response = requests.get(url, verify=ca_crt_path, timeout=5)
        if response.status_code in expected_codes:
            logger.debug(f"[READY] {url} responded with status {response.status_code}")
            return True
        logger.debug(f"[WAITING] {url} returned HTTP {response.status_code}")
        return False

    logger.info(f"Waiting for HTTP endpoint {url} to be reachable (timeout: {timeout})")
    if not wait_for_condition(_ready, f"{url} to answer", timeout=timeout, interval="1s", cancel=cancel):
        raise ImageProcessingError(f"timed out waiting for {url} to be ready")


class RegistryAccess:
    """A logged-in session against the registry from the host's container engine."""

    def __init__(
        self,
        endpoint: RegistryEndpoint,
        envs: Envs,
        ca_crt_path: str,
        credential_path: str,
        rsh: Optional[host.Host] = None,
    ) -> None:
        self.endpoint = endpoint
        self.envs = envs
        self.ca_crt_path = ca_crt_path
        self.credential_path = credential_path
        self.engine_host = rsh or host.Host(prepend_cmd=envs.prepend_cmd or None)
        self.elevated = self.engine_host.elevated(envs.elevated_prepend_cmd or None)
        self.engine = envs.container_engine
        self._docker_certs_dir = ""

    @property
    def address(self) -> str:
        return self.endpoint.address

    def _engine(self, args: list[str], input: Optional[str] = None) -> host.Result:
        return self.engine_host.run_or_raise([self.engine, *args], input=input)

    def _setup_docker_certs(self) -> None:
        d = posixpath.join(DOCKER_CERTS_D, self.address)
        self.elevated.run_or_raise(["mkdir", "-p", d])
        self.elevated.run_or_raise(["cp", self.ca_crt_path, posixpath.join(d, "ca.crt")])
        self._docker_certs_dir = d
        logger.info(f"Set up Docker certificates for {self.address}")

    def _teardown_docker_certs(self) -> None:
        if not self._docker_certs_dir:
            return
        ret = self.elevated.run(["rm", "-rf", self._docker_certs_dir])
        if not ret.success():
            logger.warning(f"Failed to remove {self._docker_certs_dir}: {ret.err.strip()}")
        self._docker_certs_dir = ""

    def _wait_for_connection(self, cancel: Optional[timer.Cancel]) -> None:
        if not wait_for_condition(lambda: tcp_port_open(self.endpoint.port, timeout=0.5), f"registry connection at 127.0.0.1:{self.endpoint.port}", timeout=CONNECT_TIMEOUT, interval=CONNECT_INTERVAL, cancel=cancel):
            raise ImageProcessingError(f"timed out waiting for registry connection at 127.0.0.1:{self.endpoint.port}")

    def login(self, registry: str, username: str, password: str) -> None:
        args = ["login", registry, "-u", username, "--password-stdin"]
        if self.envs.is_podman() and registry == self.address:
            args.insert(1, "--tls-verify=false")
        try:
            self._engine(args, input=password)
        except CommandError as e:
            raise ImageProcessingError(f"failed to login to {registry}: {e.err.strip() or e.out.strip()}") from e
        logger.info(f"Logged in to registry {registry}")

    def push(self, source_image: str) -> str:
        dest = f"{self.address}/{source_image}"
        logger.info(f"Pushing image {source_image} -> {dest}")
        self._engine(["tag", source_image, dest])
        if self.envs.is_podman():
            self._engine(["push", "--tls-verify=false", dest])
        else:
            self._engine(["push", dest])
        logger.info(f"Pushed image {dest}")
        return dest

    def pull(self, img: ImageSource, parsed: ParsedImage) -> None:
        if img.basic_auth is not None:
            username = resolve_value_from(img.basic_auth.username, "username")
            password = resolve_value_from(img.basic_auth.password, "password")
            self.login(parsed.registry, username, password)
        logger.info(f"Pulling image {img.name}")
        self._engine(["pull", img.name])

    @contextlib.contextmanager
    def session(self, cancel: Optional[timer.Cancel] = None) -> Iterator['RegistryAccess']:
        if self.envs.is_docker():
            self._setup_docker_certs()
        try:
            self._wait_for_connection(cancel)
            wait_for_http_ready(f"https://{self.address}/v2/", self.ca_crt_path, cancel=cancel)
            try:
                creds = Credentials.load(self.credential_path)
            except (OSError, ValueError, yaml.YAMLError) as e:
                raise ImageProcessingError(f"failed to read credentials {self.credential_path}: {e}") from e
            self.login(self.address, creds.username, creds.password)
            yield self
        finally:
            self._teardown_docker_certs()


def check_local_image(engine_host: host.Host, engine: str, image_name: str) -> None:
    if not engine_host.run([engine, "inspect", "--type=image", image_name]).success():
        raise ImageProcessingError(f"local image {image_name!r} not found in {engine}")


def process_images(images: list[ImageSource], access: RegistryAccess, cancel: Optional[timer.Cancel] = None) -> list[str]:
    """Pushes every image and returns the pushed references."""
    if not images:
        return []

    logger.info(f"Processing {len(images)} image(s)")
    for img in images:
        parsed = parse_image_name(img.name)
        if parsed.type == ImageType.LOCAL:
            check_local_image(access.engine_host, access.engine, parsed.image_name)
        if img.basic_auth is not None:
            try:
                resolve_value_from(img.basic_auth.username, "username")
                resolve_value_from(img.basic_auth.password, "password")
            except ImageProcessingError as e:
                raise ImageProcessingError(f"image {img.name!r}: {e}") from e

    pushed = []
    with access.session(cancel) as session:
        for img in images:
            parsed = parse_image_name(img.name)
            try:
                if parsed.type == ImageType.REMOTE:
                    session.pull(img, parsed)
                pushed.append(session.push(parsed.image_name))
            except CommandError as e:
                raise ImageProcessingError(f"failed to push image {img.name!r}: {e}") from e

    logger.info("All images processed successfully")
    return pushed
