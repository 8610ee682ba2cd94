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
Container runtime client.

Jobs and builders talk to the runtime through the RuntimeClient protocol;
DockerRuntime implements it on top of the docker SDK.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, Iterable, List, Optional, Protocol, Tuple, Type

import docker
from docker.errors import APIError, DockerException

from ..errors import BuildError, CoreprovError, PullError, RuntimeClientError

logger = logging.getLogger(__name__)


@dataclass
class ContainerSummary:
    """A container as reported by the runtime's list call."""
    id: str
    names: List[str] = field(default_factory=list)


@dataclass
class ExecResult:
    """Outcome of a one-shot command run inside a container."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""


class RuntimeClient(Protocol):
    """
    Operations the provisioning jobs need from a container runtime.
    """

    def list_image_tags(self) -> List[str]: ...

    def pull(self, reference: str, writer: Any) -> None: ...

    def build(self, context: BinaryIO, dockerfile: str, tag: str, writer: Any,
              forcerm: bool = True, squash: bool = False,
              buildargs: Optional[Dict[str, str]] = None) -> None: ...

    def list_containers(self) -> List[ContainerSummary]: ...

    def create_container(self, name: str, config: Dict[str, Any],
                         host_config: Dict[str, Any]) -> Tuple[str, List[str]]: ...

    def start_container(self, container_id: str) -> None: ...

    def inspect_container(self, container_id: str) -> Dict[str, Any]: ...

    def exec_run(self, container_id: str, user: str, cmd: List[str]) -> ExecResult: ...

    def close(self) -> None: ...


def render_json_stream(stream: Iterable[Dict[str, Any]], writer: Any,
                       error_cls: Type[CoreprovError] = RuntimeClientError) -> None:
    """
    Renders a decoded docker JSON message stream as text lines.

    :param stream: Decoded JSON messages from a pull or build.
    :param writer: Destination with a write(str) method, or None.
    :param error_cls: Exception raised when the stream reports an error.
    :raises error_cls: On the first message carrying an error.
    """
    for message in stream:
        if not isinstance(message, dict):
            continue
        error = message.get("error") or (message.get("errorDetail") or {}).get("message")
        if error:
            raise error_cls(str(error).strip())
        if writer is None:
            continue
        if "stream" in message:
            writer.write(message["stream"])
        elif "status" in message:
            parts = [message.get("id"), message["status"], message.get("progress")]
            line = " ".join(str(p) for p in parts if p)
            writer.write(line + "\n")
        elif "aux" in message and isinstance(message["aux"], dict) and "ID" in message["aux"]:
            writer.write(f"Built {message['aux']['ID']}\n")


class DockerRuntime:
    """
    RuntimeClient backed by the docker SDK.
    """

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        :param client: Docker client; defaults to docker.from_env().
        """
        try:
            self.client = client or docker.from_env()
        except DockerException as e:
            raise RuntimeClientError(f"Unable to connect to the container runtime: {e}") from e
        self.api = self.client.api

    def list_image_tags(self) -> List[str]:
        try:
            images = self.api.images()
        except DockerException as e:
            raise RuntimeClientError(f"Unable to list images: {e}") from e
        return [tag for image in images for tag in (image.get("RepoTags") or [])]

    def pull(self, reference: str, writer: Any) -> None:
        logger.debug("Pulling %s", reference)
        try:
            stream = self.api.pull(reference, stream=True, decode=True)
            render_json_stream(stream, writer, PullError)
        except APIError as e:
            raise PullError(f"Unable to pull {reference}: {e.explanation or e}") from e
        except DockerException as e:
            raise PullError(f"Unable to pull {reference}: {e}") from e

    def build(self, context: BinaryIO, dockerfile: str, tag: str, writer: Any,
              forcerm: bool = True, squash: bool = False,
              buildargs: Optional[Dict[str, str]] = None) -> None:
        logger.debug("Building %s from %s", tag, dockerfile)
        try:
            stream = self.api.build(
                fileobj=context,
                custom_context=True,
                dockerfile=dockerfile,
                tag=tag,
                rm=True,
                forcerm=forcerm,
                squash=squash or None,
                buildargs=buildargs or None,
                pull=False,
                decode=True,
            )
            render_json_stream(stream, writer, BuildError)
        except APIError as e:
            raise BuildError(f"Unable to build {tag}: {e.explanation or e}") from e
        except DockerException as e:
            raise BuildError(f"Unable to build {tag}: {e}") from e

    def list_containers(self) -> List[ContainerSummary]:
        try:
            containers = self.api.containers(all=True)
        except DockerException as e:
            raise RuntimeClientError(f"Unable to list containers: {e}") from e
        return [ContainerSummary(id=c["Id"], names=list(c.get("Names") or [])) for c in containers]

    def create_container(self, name: str, config: Dict[str, Any],
                         host_config: Dict[str, Any]) -> Tuple[str, List[str]]:
        try:
            hc = self.api.create_host_config(**host_config)
            res = self.api.create_container(name=name.lstrip("/"), host_config=hc, **config)
        except DockerException as e:
            raise RuntimeClientError(f"Unable to create container {name}: {e}") from e
        return res["Id"], list(res.get("Warnings") or [])

    def start_container(self, container_id: str) -> None:
        try:
            self.api.start(container_id)
        except DockerException as e:
            raise RuntimeClientError(f"Unable to start container {container_id}: {e}") from e

    def inspect_container(self, container_id: str) -> Dict[str, Any]:
        try:
            return self.api.inspect_container(container_id)
        except DockerException as e:
            raise RuntimeClientError(f"Unable to inspect container {container_id}: {e}") from e

    def exec_run(self, container_id: str, user: str, cmd: List[str]) -> ExecResult:
        try:
            exec_id = self.api.exec_create(container_id, cmd, user=user, stdout=True, stderr=True)
            stdout, stderr = self.api.exec_start(exec_id, demux=True)
            exit_code = self.api.exec_inspect(exec_id).get("ExitCode")
        except DockerException as e:
            raise RuntimeClientError(f"Unable to exec in container {container_id}: {e}") from e
        return ExecResult(
            exit_code=exit_code if exit_code is not None else -1,
            stdout=(stdout or b"").decode(errors="replace"),
            stderr=(stderr or b"").decode(errors="replace"),
        )

    def close(self) -> None:
        self.client.close()
