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
Models for the declarative provisioning configuration: images, containers and users.
"""
import posixpath
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def ensure_slash_prefix(name: str) -> str:
    """
    Ensures a container name carries the leading '/' the runtime reports.

    :param name: Container name, with or without the prefix.
    :return: The name with a single leading '/'.
    """
    if not name.startswith("/"):
        return "/" + name
    return name


def confine_path(value: str) -> str:
    """
    Re-roots a relative path so that it cannot escape its parent tree.

    ``../../etc`` becomes ``./etc``, ``sub/dir`` becomes ``./sub/dir``.
    """
    if not value:
        return value
    return "." + posixpath.normpath(posixpath.join("/", value))


class SpecModel(BaseModel):
    """
    Base model accepting both camelCase (as written in YAML) and snake_case keys.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PullPolicy(str, Enum):
    """
    When an image should be pulled from its registry.
    """
    ALWAYS = "always"
    IF_NOT_PRESENT = "ifnotpresent"
    IF_BUILD_FAILS = "ifbuildfails"


class ImagePullSpec(SpecModel):
    """
    Describes how to pull an image.
    """
    policy: PullPolicy = Field(default=PullPolicy.IF_NOT_PRESENT, alias="pullPolicy")
    registry: str = ""

    def reference(self, image_name: str) -> str:
        """
        Returns the reference to pull, prefixed with the registry when one is set.
        """
        if self.registry:
            return f"{self.registry}/{image_name}"
        return image_name


class ImageBuildSpec(SpecModel):
    """
    Describes how to build an image from source.
    """
    # Filesystem path, git:// or .git URL, or .tar.gz path/URL.
    source: str = ""
    # Path inside the source tree to use as the build context.
    root: str = ""
    # Path to the Dockerfile inside the build context.
    dockerfile: str = ""
    build_args: Dict[str, Optional[str]] = {}
    preserve_intermediate: bool = False
    # Deprecated: rebuild the whole FROM chain on arch-specific base images.
    scratch_build: bool = False
    squash: bool = False

    def fill_defaults(self):
        self.root = confine_path(self.root)
        self.dockerfile = confine_path(self.dockerfile)


class ImageSpec(SpecModel):
    """
    An image that should exist on the host, identified by name and tag.
    """
    name: str = Field(default="", exclude=True)
    pull: Optional[ImagePullSpec] = None
    build: Optional[ImageBuildSpec] = None


class ContainerPort(SpecModel):
    """
    A port mapping from the host into a container.
    """
    host_port: int
    container_port: int


class ContainerSpec(SpecModel):
    """
    A container that should exist, created from an image.
    """
    name: str = Field(default="", exclude=True)
    image: str = ""
    tty: bool = False
    working_directory: str = ""
    # Docker bind style, "source:target[:options]".
    mounts: List[str] = []
    disable_init: bool = False
    privileged: bool = False
    cap_add: List[str] = []
    host_ipc: bool = Field(default=False, alias="hostIPC")
    host_pid: bool = Field(default=False, alias="hostPID")
    host_uts: bool = Field(default=False, alias="hostUTS")
    host_network: bool = False
    security_opt: List[str] = []
    # {"/run": "rw,noexec,nosuid,size=65536k"}
    tmp_fs: Dict[str, str] = {}
    entrypoint: List[str] = []
    cmd: List[str] = []
    # KEY=VALUE entries.
    env: List[str] = []
    ports: List[ContainerPort] = []
    dns: List[str] = Field(default=[], alias="dns")
    dns_search: List[str] = Field(default=[], alias="dnsSearch")
    hosts: List[str] = []
    restart_policy: str = ""
    start_after_create: bool = False
    stop_signal: str = ""


class UserAuth(SpecModel):
    """
    Authentication settings for a host user.
    """
    copy_root_keys: bool = False
    ssh_keys: List[str] = Field(default=[], alias="sshKeys")
    # Empty means a long random password unless allow_empty_password is set.
    password: str = ""
    allow_empty_password: bool = False
    locked: bool = False


class UserSpec(SpecModel):
    """
    A host user account whose login shell enters a container.
    """
    name: str = Field(default="", exclude=True)
    container: str = ""
    auth: Optional[UserAuth] = None
    container_user: str = ""
    container_shell: List[str] = []
    # Failure to create the in-container user is logged and ignored.
    create_container_user: bool = False

    def to_user_shell(self, container_id: str) -> "UserShellConfig":
        """
        Builds the descriptor stored in the user's home directory.

        :param container_id: Resolved ID of the user's container.
        """
        return UserShellConfig(
            container_id=container_id,
            user=self.container_user,
            shell=list(self.container_shell),
        )


class UserShellConfig(SpecModel):
    """
    Per-user descriptor consumed by the interactive shell to attach to a container.
    """
    container_id: str
    user: str = ""
    shell: List[str] = []


class Config(SpecModel):
    """
    The complete provisioning configuration.
    """
    containers: Dict[str, ContainerSpec] = {}
    users: Dict[str, UserSpec] = {}
    images: Dict[str, ImageSpec] = {}

    def fill_private_fields(self):
        """
        Names every entity after its key in the configuration maps.
        """
        for name, container in self.containers.items():
            container.name = ensure_slash_prefix(name)
        for name, image in self.images.items():
            image.name = name
        for name, user in self.users.items():
            user.name = name

    def fill_defaults(self):
        """
        Applies defaults and normalizes references.
        """
        for image in self.images.values():
            if image.build is not None:
                image.build.fill_defaults()
        for user in self.users.values():
            if user.container:
                user.container = ensure_slash_prefix(user.container)
