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
Ensures a configured container exists, creating it once its image is ready.
"""
import logging
from typing import Any, Dict, Optional, Tuple

from ..errors import ConfigError, CoreprovError
from ..MODELS.config import ContainerSpec, ensure_slash_prefix
from ..RUNTIME.docker_client import RuntimeClient
from .job import ImageWaiter, SetupJob

logger = logging.getLogger(__name__)

INIT_BIND = "/usr/bin/tini:/dev/init"


def build_create_request(spec: ContainerSpec) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """
    Translates a container spec into runtime create options.

    :return: Container config and host config keyword arguments, empty
        settings omitted.
    """
    config: Dict[str, Any] = {
        "image": spec.image,
        "tty": spec.tty,
    }
    if spec.cmd:
        config["command"] = list(spec.cmd)
    if spec.entrypoint:
        config["entrypoint"] = list(spec.entrypoint)
    if spec.working_directory:
        config["working_dir"] = spec.working_directory
    if spec.stop_signal:
        config["stop_signal"] = spec.stop_signal
    env = [e for e in spec.env if e]
    if env:
        config["environment"] = env
    if spec.ports:
        config["ports"] = [p.container_port for p in spec.ports]

    use_init = not spec.disable_init
    host_config: Dict[str, Any] = {
        "init": use_init,
        "privileged": spec.privileged,
    }
    binds = list(spec.mounts)
    if use_init:
        binds.append(INIT_BIND)
    if binds:
        host_config["binds"] = binds
    if spec.cap_add:
        host_config["cap_add"] = list(spec.cap_add)
    if spec.dns:
        host_config["dns"] = list(spec.dns)
    if spec.dns_search:
        host_config["dns_search"] = list(spec.dns_search)
    if spec.hosts:
        host_config["extra_hosts"] = list(spec.hosts)
    if spec.security_opt:
        host_config["security_opt"] = list(spec.security_opt)
    if spec.tmp_fs:
        host_config["tmpfs"] = dict(spec.tmp_fs)
    if spec.restart_policy:
        host_config["restart_policy"] = {"Name": spec.restart_policy}
    if spec.ports:
        host_config["port_bindings"] = {p.container_port: p.host_port for p in spec.ports}
    if spec.host_network:
        host_config["network_mode"] = "host"
    if spec.host_ipc:
        host_config["ipc_mode"] = "host"
    if spec.host_pid:
        host_config["pid_mode"] = "host"
    if spec.host_uts:
        host_config["uts_mode"] = "host"
    return config, host_config


class ContainerSetup(SetupJob):
    """
    Reconciles one container: find it by name, or wait for its image and create it.
    """

    def __init__(self, spec: ContainerSpec, waiter: ImageWaiter, runtime: RuntimeClient,
                 output: Optional[Any] = None):
        """
        :param spec: The container to reconcile.
        :param waiter: Used to wait for the container's image.
        :param runtime: Runtime client.
        :param output: Observer receiving the job's output.
        """
        super().__init__(output)
        self.spec = spec
        self.waiter = waiter
        self.runtime = runtime
        self.container_id = ""

    @property
    def name(self) -> str:
        return ensure_slash_prefix(self.spec.name)

    def find_container(self) -> Optional[str]:
        """
        Looks up the container by exact name.

        :return: The container ID, None if there is no such container.
        """
        for container in self.runtime.list_containers():
            if self.name in (ensure_slash_prefix(n) for n in container.names):
                logger.debug("Container %s already exists", self.name)
                return container.id
        return None

    def _run(self) -> None:
        spec = self.spec
        if not spec.image:
            raise ConfigError(f"Container {self.name} must have image specified.")

        container_id = self.find_container()
        if container_id is None:
            error = self.waiter.wait_for_image(spec.image, self.log)
            if error is not None:
                raise error
            # The container may have been created while the image was prepared.
            container_id = self.find_container()

        if container_id is None:
            config, host_config = build_create_request(spec)
            container_id, warnings = self.runtime.create_container(self.name, config, host_config)
            logger.debug("Container %s created with ID %s", self.name, container_id)
            for warning in warnings:
                logger.warning("Runtime issued warning: %s", warning)

        self.container_id = container_id
        self.log.write(f"Container created/found with ID: {container_id}\n")

        if spec.start_after_create:
            self.log.write(f"Starting container {container_id}...\n")
            try:
                self.runtime.start_container(container_id)
            except CoreprovError as e:
                logger.warning("Could not start container %s: %s", self.name, e)
                self.log.write(f"Could not start container, continuing: {e}\n")

    def wait_with_id(self, writer: Any = None) -> Tuple[str, Optional[Exception]]:
        """
        Waits for the job and returns the resolved container ID with its error.
        """
        error = self.wait(writer)
        return self.container_id, error
