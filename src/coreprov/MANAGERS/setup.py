# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Orchestration of the image, container and user jobs of a configuration.

Every job runs on its own thread. There is no scheduler: a container job
blocks on its image job and a user job blocks on its container job through
the waiter methods of Setup.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ConfigError, CoreprovError
from ..MODELS.config import Config, ImageSpec, ensure_slash_prefix
from ..RUNNERS.exec_cmd import exec_cmd_container, start_container
from ..RUNTIME.docker_client import ExecResult, RuntimeClient
from .container_setup import ContainerSetup
from .image_setup import BuilderFactory, ImageSetup
from .job import SetupJob
from .user_setup import HostAccounts, UserSetup

logger = logging.getLogger(__name__)


class Setup:
    """
    Converges the runtime and host state to a configuration.
    """

    def __init__(self, config: Config, runtime: RuntimeClient, create_users: bool = False,
                 output: Optional[Any] = None, accounts: Optional[HostAccounts] = None,
                 shell_path: Optional[str] = None,
                 builder_factory: Optional[BuilderFactory] = None):
        """
        Creates one job per image, container and user.

        Images referenced by a container but not declared get a job with an
        empty spec, which succeeds only if the image already exists.

        :param config: Configuration, with names and defaults filled in.
        :param runtime: Runtime client shared by the jobs.
        :param create_users: Create missing host accounts.
        :param output: Observer of image job output.
        :param accounts: Host account backend for user jobs.
        :param shell_path: Login shell of provisioned users.
        :param builder_factory: Creates image builders.
        """
        self.config = config
        self.runtime = runtime
        self.create_users = create_users
        self.image_setups: Dict[str, ImageSetup] = {}
        self.container_setups: Dict[str, ContainerSetup] = {}
        self.user_setups: Dict[str, UserSetup] = {}
        self.jobs: List[SetupJob] = []
        self.completed_jobs = 0

        def add_image_job(spec: ImageSpec):
            job = ImageSetup(spec, runtime, output=output, builder_factory=builder_factory)
            self.image_setups[spec.name] = job
            self.jobs.append(job)

        for name, image in config.images.items():
            if not image.name:
                image.name = name
            add_image_job(image)

        for name, container in config.containers.items():
            container.name = ensure_slash_prefix(container.name or name)
            if container.image and container.image not in self.image_setups:
                logger.debug("Image %s is not declared, adding it", container.image)
                add_image_job(ImageSpec(name=container.image))
            job = ContainerSetup(container, self, runtime)
            self.container_setups[container.name] = job
            self.jobs.append(job)

        for name, user in config.users.items():
            if not user.name:
                user.name = name
            job = UserSetup(user, self, create_users, accounts=accounts, shell_path=shell_path)
            self.user_setups[user.name] = job
            self.jobs.append(job)

    def execute(self) -> Optional[Exception]:
        """
        Runs every job concurrently and waits for all of them.

        Each failure is logged; only the first one is returned, and only after
        every job has finished.

        :return: The first job error, None if all jobs succeeded.
        """
        self.completed_jobs = 0
        total = len(self.jobs)
        if total == 0:
            return None

        first_error: Optional[Exception] = None
        with ThreadPoolExecutor(max_workers=total, thread_name_prefix="setup-job") as executor:
            futures = [executor.submit(job.execute) for job in self.jobs]
            for future in as_completed(futures):
                logger.debug("Waiting for %d/%d jobs...", total - self.completed_jobs, total)
                error = future.result()
                self.completed_jobs += 1
                if error is not None:
                    logger.error("Job error: %s", error)
                    if first_error is None:
                        first_error = error
        return first_error

    def wait_for_image(self, ref: str, writer: Any = None) -> Optional[Exception]:
        """
        Blocks until the job of an image has finished.

        :return: The job's error, or a ConfigError if the image has no job.
        """
        job = self.image_setups.get(ref)
        if job is None:
            return ConfigError(f"No image {ref} declared!")
        return job.wait(writer)

    def wait_for_container(self, name: str, writer: Any = None) -> Tuple[str, Optional[Exception]]:
        """
        Blocks until the job of a container has finished.

        :return: The resolved container ID and the job's error.
        """
        job = self.container_setups.get(ensure_slash_prefix(name))
        if job is None:
            return "", ConfigError(f"No container {name} declared!")
        return job.wait_with_id(writer)

    def check_has_container(self, name: str) -> bool:
        return ensure_slash_prefix(name) in self.container_setups

    def exec_cmd_container(self, container_id: str, user: str, command: str, *args: str) -> ExecResult:
        """
        Runs a one-shot command inside a container, starting it first if needed.
        """
        try:
            start_container(self.runtime, container_id)
        except CoreprovError as e:
            logger.debug("Unable to ensure %s is running: %s", container_id[:12], e)
        return exec_cmd_container(self.runtime, container_id, user, command, *args)
