"""
Shared fakes for the runtime and host account seams.
"""
import io
import os
import tarfile
import threading

import pytest

from coreprov.MANAGERS.user_setup import HostUser
from coreprov.RUNTIME.docker_client import ContainerSummary, ExecResult


class FakeRuntime:
    """In-memory RuntimeClient recording every call."""

    def __init__(self, images=None, containers=None):
        self.images = list(images or [])
        self.containers = list(containers or [])
        self.pulls = []
        self.builds = []
        self.created = []
        self.started = []
        self.execs = []
        self.exec_results = {}
        self.pull_error = None
        self.build_error = None
        self.list_error = None
        self.start_error = None
        self.closed = False
        self._lock = threading.Lock()

    def list_image_tags(self):
        if self.list_error is not None:
            raise self.list_error
        with self._lock:
            return list(self.images)

    def pull(self, reference, writer):
        with self._lock:
            self.pulls.append(reference)
        if self.pull_error is not None:
            raise self.pull_error
        if writer is not None:
            writer.write(f"Pulled {reference}\n")
        with self._lock:
            self.images.append(reference)

    def build(self, context, dockerfile, tag, writer, forcerm=True, squash=False, buildargs=None):
        with tarfile.open(fileobj=io.BytesIO(context.read())) as tar:
            names = tar.getnames()
            text = tar.extractfile(dockerfile).read().decode() if dockerfile in names else None
        with self._lock:
            self.builds.append({
                "tag": tag,
                "dockerfile": dockerfile,
                "names": names,
                "text": text,
                "forcerm": forcerm,
                "squash": squash,
                "buildargs": buildargs,
            })
        if self.build_error is not None:
            raise self.build_error
        if writer is not None:
            writer.write(f"Built {tag}\n")
        with self._lock:
            self.images.append(tag)

    def list_containers(self):
        with self._lock:
            return list(self.containers)

    def create_container(self, name, config, host_config):
        with self._lock:
            container_id = f"{len(self.created) + 1:012x}"
            self.created.append({"name": name, "config": config, "host_config": host_config})
            self.containers.append(ContainerSummary(id=container_id, names=[name]))
        return container_id, []

    def start_container(self, container_id):
        self.started.append(container_id)
        if self.start_error is not None:
            raise self.start_error

    def inspect_container(self, container_id):
        return {"State": {"Running": True, "Status": "running"}}

    def exec_run(self, container_id, user, cmd):
        with self._lock:
            self.execs.append((container_id, user, list(cmd)))
        return self.exec_results.get(cmd[0], ExecResult(exit_code=0))

    def close(self):
        self.closed = True


class FakeAccounts:
    """HostAccounts keeping users in memory, with homes under a temp dir."""

    def __init__(self, home_root, users=(), root=True, root_keys_path=None):
        self.home_root = str(home_root)
        self.root = root
        self.root_keys_path = root_keys_path or os.path.join(self.home_root, "root_authorized_keys")
        self.users = {}
        self.calls = []
        for name in users:
            self.add_user(name)

    def add_user(self, name):
        home = os.path.join(self.home_root, name)
        os.makedirs(home, exist_ok=True)
        self.users[name] = HostUser(name=name, uid=os.getuid(), gid=os.getgid(), home=home)

    def is_root(self):
        return self.root

    def lookup(self, name):
        return self.users.get(name)

    def create(self, name, shell):
        self.calls.append(("create", name, shell))
        self.add_user(name)

    def set_shell(self, name, shell):
        self.calls.append(("set_shell", name, shell))

    def lock(self, name):
        self.calls.append(("lock", name))

    def clear_password(self, name):
        self.calls.append(("clear_password", name))

    def set_password(self, name, password):
        self.calls.append(("set_password", name, password))

    def chown(self, path, uid, gid):
        self.calls.append(("chown", path))


@pytest.fixture
def fake_runtime():
    return FakeRuntime()


@pytest.fixture
def fake_accounts(tmp_path):
    return FakeAccounts(tmp_path / "home")
