"""
Unit tests for the setup orchestrator.
"""
import os
import threading
import time

import yaml

from coreprov.errors import ConfigError, ImageNotFoundError
from coreprov.MANAGERS.setup import Setup
from coreprov.MANAGERS.user_setup import USER_CONFIG_FILE
from coreprov.MODELS.config import (
    Config,
    ContainerSpec,
    ImageBuildSpec,
    ImagePullSpec,
    ImageSpec,
    PullPolicy,
    UserSpec,
)
from coreprov.RUNTIME.docker_client import ExecResult

SHELL = "/usr/local/bin/coreprov"


class SlowBuilderFactory:
    """Builds by tagging the image in the runtime after a delay."""

    def __init__(self, delay=0.2):
        self.delay = delay
        self.finished = threading.Event()

    def __call__(self, spec, image_name, runtime, output):
        factory = self

        class Builder:
            def build(self):
                time.sleep(factory.delay)
                runtime.images.append(image_name)
                factory.finished.set()

        return Builder()


def make_config(images=None, containers=None, users=None):
    config = Config(images=images or {}, containers=containers or {}, users=users or {})
    config.fill_private_fields()
    config.fill_defaults()
    return config


def test_undeclared_image_gets_a_job(fake_runtime):
    config = make_config(containers={"core": ContainerSpec(image="alpine:3.10")})
    setup = Setup(config, fake_runtime)

    assert set(setup.image_setups) == {"alpine:3.10"}
    assert set(setup.container_setups) == {"/core"}
    assert len(setup.jobs) == 2

    error = setup.execute()
    assert isinstance(error, ImageNotFoundError)
    assert fake_runtime.created == []


def test_empty_config(fake_runtime):
    setup = Setup(make_config(), fake_runtime)
    assert setup.execute() is None
    assert setup.completed_jobs == 0


def test_full_run(fake_runtime, fake_accounts):
    fake_accounts.add_user("alice")
    config = make_config(
        images={"coreprov/core:latest": ImageSpec(pull=ImagePullSpec(policy=PullPolicy.IF_NOT_PRESENT))},
        containers={"core": ContainerSpec(image="coreprov/core:latest", cmd=["/bin/sleep", "infinity"])},
        users={"alice": UserSpec(container="core", container_shell=["/bin/sh"])},
    )
    setup = Setup(config, fake_runtime, accounts=fake_accounts, shell_path=SHELL)

    assert setup.execute() is None
    assert setup.completed_jobs == 3
    assert fake_runtime.pulls == ["coreprov/core:latest"]
    assert fake_runtime.created[0]["name"] == "/core"
    assert fake_runtime.created[0]["config"]["command"] == ["/bin/sleep", "infinity"]

    with open(os.path.join(fake_accounts.users["alice"].home, USER_CONFIG_FILE)) as f:
        descriptor = yaml.safe_load(f)
    assert descriptor["containerId"] == setup.container_setups["/core"].container_id
    assert descriptor["shell"] == ["/bin/sh"]


def test_first_error_is_returned_after_all_jobs_finish(fake_runtime):
    builder = SlowBuilderFactory()
    config = make_config(
        images={
            "missing:1": ImageSpec(),
            "slow:1": ImageSpec(build=ImageBuildSpec(source="/src/slow")),
        },
        containers={"slow": ContainerSpec(image="slow:1")},
    )
    setup = Setup(config, fake_runtime, builder_factory=builder)

    error = setup.execute()

    assert isinstance(error, ImageNotFoundError)
    assert setup.completed_jobs == 3
    assert builder.finished.is_set()
    assert len(fake_runtime.created) == 1
    assert all(job.done for job in setup.jobs)


def test_user_of_unknown_container(fake_runtime, fake_accounts):
    config = make_config(users={"alice": UserSpec(container="nope")})
    setup = Setup(config, fake_runtime, create_users=True, accounts=fake_accounts, shell_path=SHELL)

    error = setup.execute()

    assert isinstance(error, ConfigError)
    assert fake_accounts.calls == []


class TestWaiters:

    def test_wait_for_undeclared_image(self, fake_runtime):
        setup = Setup(make_config(), fake_runtime)
        error = setup.wait_for_image("nope:1")
        assert isinstance(error, ConfigError)
        assert "No image nope:1 declared!" in str(error)

    def test_wait_for_undeclared_container(self, fake_runtime):
        setup = Setup(make_config(), fake_runtime)
        container_id, error = setup.wait_for_container("nope")
        assert container_id == ""
        assert isinstance(error, ConfigError)

    def test_container_names_are_normalized(self, fake_runtime):
        setup = Setup(make_config(containers={"core": ContainerSpec(image="alpine:3.10")}), fake_runtime)
        assert setup.check_has_container("core")
        assert setup.check_has_container("/core")
        assert not setup.check_has_container("/other")

    def test_exec_cmd_container_starts_first(self, fake_runtime):
        fake_runtime.exec_results["id"] = ExecResult(exit_code=0, stdout="uid=1000(dev)\n")
        setup = Setup(make_config(), fake_runtime)

        result = setup.exec_cmd_container("c0ffee000001", "root", "id", "dev")

        assert fake_runtime.started == ["c0ffee000001"]
        assert fake_runtime.execs == [("c0ffee000001", "root", ["id", "dev"])]
        assert result.stdout == "uid=1000(dev)\n"
