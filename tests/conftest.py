"""Shared fixtures: an in-memory container runtime and a default deployment."""

import itertools

import pytest
import requests

from docker_runner import ContainerDescriptor, DeployConfig, ImageRecord, PullError


def _conflict(message):
    response = requests.Response()
    response.status_code = 409
    return requests.HTTPError(message, response=response)


class FakeRuntime:
    """Runtime double that keeps containers and images in memory.

    ``image_id`` is what the local tag currently resolves to; a pull moves it
    to ``pulled_image_id``. Set ``failures[method]`` to make a call raise.
    """

    def __init__(self, image_id=None, pulled_image_id=None, images=None):
        self.image_id = image_id
        self.pulled_image_id = pulled_image_id if pulled_image_id is not None else image_id
        self.images = list(images or [])
        self.containers = {}
        self.calls = []
        self.failures = {}
        self.image_removal_failures = set()
        self._ids = itertools.count(1)

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    def add_container(self, name, running=True):
        container_id = f"old{next(self._ids)}"
        self.containers[container_id] = {'names': (f"/{name}",), 'running': running}
        return container_id

    def mutations(self):
        return [c for c in self.calls if c[0] in (
            'stop_container', 'remove_container', 'create_container',
            'start_container', 'remove_image')]

    def list_images(self):
        self._record('list_images')
        return list(self.images)

    def inspect_image(self, ref):
        self._record('inspect_image', ref)
        return self.image_id

    def pull(self, name, tag, auth_token=None):
        self._record('pull', name, tag, auth_token)
        yield {'status': f'Pulling from {name}', 'id': tag}
        yield {'status': 'Downloading', 'id': 'layer1', 'progress': '[=====>   ]'}
        if 'pull_stream' in self.failures:
            raise PullError(str(self.failures['pull_stream']))
        self.image_id = self.pulled_image_id
        yield {'status': f'Status: Downloaded newer image for {name}:{tag}'}

    def list_containers(self, all=True):
        self._record('list_containers', all)
        return [
            ContainerDescriptor(id=cid, names=c['names'], running=c['running'])
            for cid, c in self.containers.items()
        ]

    def inspect_container(self, container_id):
        self._record('inspect_container', container_id)
        return {'Id': container_id, 'State': {'Running': self.containers[container_id]['running']}}

    def stop_container(self, container_id):
        self._record('stop_container', container_id)
        self.containers[container_id]['running'] = False

    def remove_container(self, container_id):
        self._record('remove_container', container_id)
        if self.containers[container_id]['running']:
            raise _conflict("cannot remove a running container")
        del self.containers[container_id]

    def create_container(self, name, body):
        self._record('create_container', name, body)
        if any(f"/{name}" in c['names'] for c in self.containers.values()):
            raise _conflict(f"container name /{name} is already in use")
        container_id = f"new{next(self._ids)}"
        self.containers[container_id] = {'names': (f"/{name}",), 'running': False}
        return container_id

    def start_container(self, container_id):
        self._record('start_container', container_id)
        self.containers[container_id]['running'] = True

    def remove_image(self, image_id):
        self._record('remove_image', image_id)
        if image_id in self.image_removal_failures:
            raise _conflict(f"image {image_id} is being used")
        self.images = [i for i in self.images if i.id != image_id]


@pytest.fixture
def runtime():
    return FakeRuntime(image_id='sha256:old', pulled_image_id='sha256:new')


@pytest.fixture
def config():
    return DeployConfig(
        name='web',
        image='myorg/app:v1',
        net='host',
        volumes=('/srv/data:/data',),
        env=('MODE=production',),
        tty=True,
        restart=('always', 'image-push'),
    )


def dangling(image_id):
    return ImageRecord(id=image_id, repo_tags=('<none>:<none>',))


def tagged(image_id, *tags):
    return ImageRecord(id=image_id, repo_tags=tags)
