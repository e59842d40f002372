#!/usr/bin/env python3
"""
Docker Runner - keep one named container on the latest build of an image

Pulls the configured image, and when the pull produced a new image ID the
container is stopped, removed, recreated and started, then dangling images
are garbage-collected. With the ``image-push`` restart value the runner
also listens for registry push webhooks and redeploys on every push.
"""

__version__ = "1.0.0"

import base64
import hashlib
import json
import socket as _socket
import sys
import threading
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Tuple, Any
import argparse
import os
import requests
import jsonschema
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter


# Constants
DEFAULT_TAG = "latest"
DANGLING_MARKER = "<none>:<none>"
WEBHOOK_PATH = "/v1/docker-images/push"
PORT_RANGE_START = 49152
PORT_RANGE_SIZE = 16384
RESTART_ALWAYS = "always"
RESTART_IMAGE_PUSH = "image-push"
REQUEST_TIMEOUT = 30
PULL_TIMEOUT = 300
LOGGER_NAME = "docker-runner"
LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']
DOCKER_SOCKET_PATH = os.environ.get('DOCKER_SOCKET', '/var/run/docker.sock')

# Configuration schema
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "name": {"type": "string", "minLength": 1},
        "image": {"type": "string", "minLength": 1},
        "net": {"type": ["string", "null"]},
        "volume": {"type": "array", "items": {"type": "string"}},
        "env": {"type": "array", "items": {"type": "string"}},
        "detach": {"const": True},
        "interactive": {"type": "boolean"},
        "tty": {"type": "boolean"},
        "restart": {"type": "array", "items": {"type": "string"}},
        "auth_token": {"type": ["string", "null"]},
    },
    "required": ["name", "image", "detach"]
}

logger = logging.getLogger(LOGGER_NAME)


class DockerRunnerError(Exception):
    """Base class for errors raised by the runner."""


class ConfigurationError(DockerRunnerError):
    """Invalid or unsupported configuration; fatal at startup."""


class PullError(DockerRunnerError):
    """The image pull stream reported an error."""


class ImageMismatchError(DockerRunnerError):
    """A push notification was received for a different image."""


# ---------------------------------------------------------------------------
# Docker Engine socket client
# ---------------------------------------------------------------------------

class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str):
        super().__init__('localhost')
        self._socket_path = socket_path

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


class DockerClient:
    """Minimal Docker Engine API client over the Unix socket."""

    def __init__(self, socket_path: str = DOCKER_SOCKET_PATH):
        self._session = requests.Session()
        self._session.mount('http+unix://', _UnixSocketAdapter(socket_path))

    def _url(self, path: str) -> str:
        return f'http+unix://docker{path}'

    def get(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        r = self._session.get(self._url(path), **kwargs)
        r.raise_for_status()
        return r

    def post(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        r = self._session.post(self._url(path), **kwargs)
        r.raise_for_status()
        return r

    def delete(self, path: str, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        r = self._session.delete(self._url(path), **kwargs)
        r.raise_for_status()
        return r


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ImageRef:
    """A ``repository[:tag]`` image reference."""
    name: str
    tag: str = DEFAULT_TAG

    @classmethod
    def parse(cls, image: str) -> 'ImageRef':
        """Split an image string into repository and tag.

        Only a colon after the last slash separates the tag, so registry
        ports (``localhost:5000/app``) stay part of the repository.
        """
        last_slash = image.rfind('/')
        last_colon = image.rfind(':')
        if last_colon > last_slash:
            return cls(image[:last_colon], image[last_colon + 1:] or DEFAULT_TAG)
        return cls(image)

    def __str__(self) -> str:
        return f"{self.name}:{self.tag}"


@dataclass(frozen=True)
class ImageRecord:
    """An image as listed by the runtime."""
    id: str
    repo_tags: Tuple[str, ...]

    @property
    def dangling(self) -> bool:
        return self.repo_tags == (DANGLING_MARKER,)


@dataclass(frozen=True)
class ContainerDescriptor:
    """A container as listed by the runtime."""
    id: str
    names: Tuple[str, ...]
    running: bool

    def has_name(self, name: str) -> bool:
        return f"/{name}" in self.names


@dataclass(frozen=True)
class DeployConfig:
    """Deployment settings, built once at startup and never mutated."""
    name: str
    image: str
    net: Optional[str] = None
    volumes: Tuple[str, ...] = ()
    env: Tuple[str, ...] = ()
    detach: bool = True
    interactive: bool = False
    tty: bool = False
    restart: Tuple[str, ...] = ()
    auth_token: Optional[str] = field(default=None, repr=False)

    @property
    def image_ref(self) -> ImageRef:
        return ImageRef.parse(self.image)

    @property
    def listen_for_pushes(self) -> bool:
        return RESTART_IMAGE_PUSH in self.restart

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeployConfig':
        """Validate a configuration mapping and build the config from it."""
        try:
            jsonschema.validate(data, CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            if list(e.absolute_path) == ['detach']:
                raise ConfigurationError(
                    "non-detached mode is not supported, pass --detach"
                ) from e
            raise ConfigurationError(f"Configuration validation failed: {e.message}") from e

        return cls(
            name=data['name'],
            image=data['image'],
            net=data.get('net'),
            volumes=tuple(data.get('volume') or ()),
            env=tuple(data.get('env') or ()),
            detach=data['detach'],
            interactive=data.get('interactive', False),
            tty=data.get('tty', False),
            restart=tuple(data.get('restart') or ()),
            auth_token=data.get('auth_token'),
        )


def derive_port(image: str) -> int:
    """Map an image reference to a stable port in the dynamic range."""
    digest = hashlib.md5(image.encode('utf-8')).hexdigest()
    return int(digest[:4], 16) % PORT_RANGE_SIZE + PORT_RANGE_START


# ---------------------------------------------------------------------------
# Runtime capabilities
# ---------------------------------------------------------------------------

class DockerRuntime:
    """Container-runtime operations used by the reconciler."""

    def __init__(self, client: Optional[DockerClient] = None):
        self._docker = client or DockerClient()

    def list_images(self) -> List[ImageRecord]:
        response = self._docker.get('/images/json')
        return [
            ImageRecord(
                id=img['Id'],
                # Newer engines report untagged images with no RepoTags at all
                repo_tags=tuple(img.get('RepoTags') or (DANGLING_MARKER,)),
            )
            for img in response.json()
        ]

    def inspect_image(self, ref: str) -> Optional[str]:
        """Return the ID of the local image ``ref``, or None if absent."""
        try:
            response = self._docker.get(f'/images/{ref}/json')
        except requests.HTTPError as e:
            if e.response is not None and e.response.status_code == 404:
                return None
            raise
        return response.json().get('Id')

    def pull(self, name: str, tag: str,
             auth_token: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """Pull an image and yield the progress events of the pull stream.

        Raises PullError when the stream reports an error.
        """
        headers = {}
        if auth_token:
            auth = json.dumps({'identitytoken': auth_token}).encode('utf-8')
            headers['X-Registry-Auth'] = base64.urlsafe_b64encode(auth).decode('ascii')

        response = self._docker.post(
            '/images/create',
            params={'fromImage': name, 'tag': tag},
            headers=headers,
            stream=True,
            timeout=PULL_TIMEOUT,
        )
        with response:
            for line in response.iter_lines():
                if not line:
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if 'error' in event:
                    raise PullError(f"Error pulling {name}:{tag}: {event['error']}")
                yield event

    def list_containers(self, all: bool = True) -> List[ContainerDescriptor]:
        response = self._docker.get('/containers/json', params={'all': '1' if all else '0'})
        return [
            ContainerDescriptor(
                id=c['Id'],
                names=tuple(c.get('Names') or ()),
                running=c.get('State') == 'running',
            )
            for c in response.json()
        ]

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        return self._docker.get(f'/containers/{container_id}/json').json()

    def stop_container(self, container_id: str) -> None:
        # 304 (already stopped) is not raised by raise_for_status
        self._docker.post(f'/containers/{container_id}/stop')

    def remove_container(self, container_id: str) -> None:
        self._docker.delete(f'/containers/{container_id}')

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        response = self._docker.post('/containers/create', params={'name': name}, json=body)
        return response.json()['Id']

    def start_container(self, container_id: str) -> None:
        self._docker.post(f'/containers/{container_id}/start')

    def remove_image(self, image_id: str) -> None:
        self._docker.delete(f'/images/{image_id}')


# ---------------------------------------------------------------------------
# Reconciliation
# ---------------------------------------------------------------------------

class ImageSynchronizer:
    """Pulls an image and reports whether its ID changed."""

    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime

    def sync(self, ref: ImageRef, auth_token: Optional[str] = None) -> bool:
        try:
            previous_id = self.runtime.inspect_image(str(ref))
            logger.info(f"Pulling {ref}...")
            for event in self.runtime.pull(ref.name, ref.tag, auth_token):
                status = event.get('status')
                if status:
                    progress = event.get('progress') or ''
                    layer = f"{event['id']}: " if event.get('id') else ''
                    logger.debug(f"{layer}{status} {progress}".rstrip())
            current_id = self.runtime.inspect_image(str(ref))
        finally:
            logger.info("pullImage: done")

        changed = current_id != previous_id
        if changed:
            logger.info(f"New image for {ref}: {previous_id} -> {current_id}")
        else:
            logger.info(f"Image {ref} is up to date")
        return changed


class ContainerLifecycleManager:
    """Stop, remove, create and start the container with a configured name."""

    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime

    def find(self, name: str) -> Optional[ContainerDescriptor]:
        for container in self.runtime.list_containers(all=True):
            if container.has_name(name):
                return container
        return None

    def stop_if_running(self, name: str) -> None:
        try:
            container = self.find(name)
            if container is None:
                return
            info = self.runtime.inspect_container(container.id)
            if not (info.get('State') or {}).get('Running'):
                return
            logger.info(f"Stopping container {name}...")
            self.runtime.stop_container(container.id)
        finally:
            logger.info("stopContainer: done")

    def remove(self, name: str) -> None:
        try:
            container = self.find(name)
            if container is None:
                return
            logger.info(f"Removing container {name}...")
            self.runtime.remove_container(container.id)
        finally:
            logger.info("removeContainer: done")

    def create_and_start(self, config: DeployConfig) -> str:
        """Create the container from ``config`` and start it; return its ID."""
        try:
            if not config.detach:
                raise ConfigurationError("non-detached mode is not supported")
            body = build_create_body(config)
            logger.info(f"Creating container {config.name} from {config.image}...")
            container_id = self.runtime.create_container(config.name, body)
            self.runtime.start_container(container_id)
            logger.info(f"Started container {config.name} ({container_id[:12]})")
            return container_id
        finally:
            logger.info("runImage: done")

    def ensure_running(self, config: DeployConfig) -> None:
        """Make sure a container named ``config.name`` exists and runs."""
        container = self.find(config.name)
        if container is None:
            logger.info(f"Container {config.name} does not exist, creating it")
            self.create_and_start(config)
        elif not container.running:
            logger.info(f"Container {config.name} is stopped, starting it")
            self.runtime.start_container(container.id)


def build_create_body(config: DeployConfig) -> Dict[str, Any]:
    """Build the Engine API container-create body for ``config``."""
    body: Dict[str, Any] = {
        'Image': config.image,
        'Env': list(config.env),
        'Tty': config.tty,
        'OpenStdin': config.interactive,
    }

    hc: Dict[str, Any] = {}
    if config.net:
        hc['NetworkMode'] = config.net
    if config.volumes:
        hc['Binds'] = list(config.volumes)
    # Only "always" maps to a runtime policy; other values are ignored
    if RESTART_ALWAYS in config.restart:
        hc['RestartPolicy'] = {'Name': RESTART_ALWAYS}
    body['HostConfig'] = hc

    return body


class ImageGarbageCollector:
    """Removes dangling images left behind by redeploys."""

    def __init__(self, runtime: DockerRuntime):
        self.runtime = runtime

    def collect(self) -> int:
        removed = 0
        for image in self.runtime.list_images():
            if not image.dangling:
                continue
            try:
                self.runtime.remove_image(image.id)
                removed += 1
                logger.info(f"Removed dangling image {image.id[:19]}")
            except requests.RequestException as e:
                logger.warning(f"Could not remove dangling image {image.id[:19]}: {e}")
        logger.info("removeDanglingImages: done")
        return removed


class Reconciler:
    """One redeploy-if-changed pass; passes never overlap.

    A trigger that arrives while a pass is running waits for it to finish
    and then runs its own pass.
    """

    def __init__(self, config: DeployConfig, runtime: DockerRuntime):
        self.config = config
        self.synchronizer = ImageSynchronizer(runtime)
        self.lifecycle = ContainerLifecycleManager(runtime)
        self.collector = ImageGarbageCollector(runtime)
        self._lock = threading.Lock()

    def reconcile(self) -> bool:
        """Run a reconciliation pass; return True if the container was replaced."""
        with self._lock:
            config = self.config
            if not self.synchronizer.sync(config.image_ref, config.auth_token):
                return False

            self.lifecycle.stop_if_running(config.name)
            self.lifecycle.remove(config.name)
            self.lifecycle.create_and_start(config)
            self.collector.collect()
            return True

    def ensure_running(self) -> None:
        with self._lock:
            self.lifecycle.ensure_running(self.config)


class Agent:
    """Startup orchestration: reconcile once, then optionally serve webhooks."""

    def __init__(self, config: DeployConfig, runtime: Optional[DockerRuntime] = None):
        self.config = config
        self.runtime = runtime or DockerRuntime()
        self.reconciler = Reconciler(config, self.runtime)

    def run(self) -> int:
        ok = True
        try:
            self.reconciler.reconcile()
        except (requests.RequestException, DockerRunnerError) as e:
            logger.error(f"Startup reconciliation failed: {e}")
            ok = False

        try:
            self.reconciler.ensure_running()
        except (requests.RequestException, DockerRunnerError) as e:
            logger.error(f"Could not start container {self.config.name}: {e}")
            ok = False

        if self.config.listen_for_pushes:
            # webhook imports this module
            from webhook import serve
            serve(self.config, self.reconciler)
            return 0

        return 0 if ok else 1


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def _setup_logging(level: str) -> logging.Logger:
    """Setup logging configuration."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))

    if not root.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)

    return logger


def _load_config_file(path: Optional[str]) -> Dict[str, Any]:
    """Load a JSON configuration file, or return an empty mapping."""
    if not path:
        return {}
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file {path} not found") from e
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Error parsing config file: {e}") from e
    if not isinstance(data, dict):
        raise ConfigurationError("Config file must contain a JSON object")
    return data


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='docker-runner',
        description='Keep a container running the latest build of an image'
    )
    parser.add_argument(
        'image',
        nargs='?',
        default=os.environ.get('IMAGE'),
        help='Image to pull and run (env: IMAGE)'
    )
    parser.add_argument(
        '--name',
        default=os.environ.get('CONTAINER_NAME'),
        help='Assign a name to the container (env: CONTAINER_NAME)'
    )
    parser.add_argument('--net', help='Set the network mode for the container')
    parser.add_argument(
        '-v', '--volume',
        action='append',
        help='Bind mount a volume (repeatable)'
    )
    parser.add_argument(
        '-e', '--env',
        action='append',
        help='Set an environment variable KEY=VALUE (repeatable)'
    )
    parser.add_argument(
        '-d', '--detach',
        action='store_true',
        default=None,
        help='Detached mode: run the container in the background (required)'
    )
    parser.add_argument(
        '-i', '--interactive',
        action='store_true',
        default=None,
        help='Keep STDIN open even if not attached'
    )
    parser.add_argument(
        '-t', '--tty',
        action='store_true',
        default=None,
        help='Allocate a pseudo-TTY'
    )
    parser.add_argument(
        '--restart',
        action='append',
        help='Restart policy to apply: "always" and/or "image-push" (repeatable)'
    )
    parser.add_argument(
        '--auth-token',
        default=os.environ.get('REGISTRY_AUTH_TOKEN'),
        help='Registry identity token used for pulls (env: REGISTRY_AUTH_TOKEN)'
    )
    parser.add_argument(
        '--config',
        default=os.environ.get('CONFIG_FILE'),
        help='Path to a JSON file with the same settings (env: CONFIG_FILE)'
    )
    parser.add_argument(
        '--log-level',
        choices=LOG_LEVELS,
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    return parser


def config_from_args(args: argparse.Namespace) -> DeployConfig:
    """Merge the config file with command-line values (command line wins)."""
    data = _load_config_file(args.config)
    cli = {
        'image': args.image,
        'name': args.name,
        'net': args.net,
        'volume': args.volume,
        'env': args.env,
        'detach': args.detach,
        'interactive': args.interactive,
        'tty': args.tty,
        'restart': args.restart,
        'auth_token': args.auth_token,
    }
    data.update({k: v for k, v in cli.items() if v is not None})
    data.setdefault('detach', False)
    return DeployConfig.from_dict(data)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    # Environment defaults bypass argparse choices
    if args.log_level.upper() not in LOG_LEVELS:
        parser.error(f"invalid LOG_LEVEL {args.log_level!r} (choose from {', '.join(LOG_LEVELS)})")
    _setup_logging(args.log_level)
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)

    try:
        config = config_from_args(args)
    except ConfigurationError as e:
        logger.error(f"Fatal error: {e}")
        return 1

    try:
        return Agent(config).run()
    except KeyboardInterrupt:
        logger.info("Exiting...")
        return 0


if __name__ == '__main__':
    sys.exit(main())
