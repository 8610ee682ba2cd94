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
Execution of host commands and one-shot commands inside containers.
"""
import logging
import subprocess
from typing import Optional

from tenacity import RetryError, retry, retry_if_result, stop_after_delay, wait_fixed

from ..errors import CommandError, ContainerSetupError
from ..RUNTIME.docker_client import ExecResult, RuntimeClient

logger = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 0.1


def exec_cmd(command: str, *args: str, stdin: Optional[str] = None,
             capture: bool = False) -> subprocess.CompletedProcess:
    """
    Runs a command on the host.

    :param command: Executable to run.
    :param args: Arguments to the executable.
    :param stdin: Text fed to the command's standard input.
    :param capture: Capture stdout/stderr instead of inheriting them.
    :return: The completed process.
    :raises CommandError: If the command exits with a non-zero status.
    """
    cmd = [command, *args]
    logger.debug("Running %s", " ".join(cmd))
    result = subprocess.run(
        cmd,
        input=stdin,
        text=True,
        capture_output=capture,
        # Avoid shell=True for security reasons (CWE-78)
        shell=False,
    )
    if result.returncode != 0:
        raise CommandError(cmd, result.returncode)
    return result


def exec_cmd_container(runtime: RuntimeClient, container_id: str, user: str,
                       command: str, *args: str) -> ExecResult:
    """
    Runs a command inside a running container and collects its output.

    stdout and stderr are demultiplexed since no pseudo-terminal is used.
    """
    cmd = [command, *args]
    logger.debug("Running %s in %s as %s", " ".join(cmd), container_id[:12], user or "default user")
    return runtime.exec_run(container_id, user, cmd)


def start_container(runtime: RuntimeClient, container_id: str,
                    poll_interval: float = 0.5, timeout: float = 30.0) -> None:
    """
    Starts a container and waits until the runtime reports it running.

    :param runtime: Runtime client.
    :param container_id: Container to start.
    :param poll_interval: Seconds between state checks.
    :param timeout: Seconds to wait before giving up.
    :raises ContainerSetupError: If the container exits, dies or does not come up in time.
    """
    runtime.start_container(container_id)

    @retry(
        retry=retry_if_result(lambda running: not running),
        wait=wait_fixed(max(poll_interval, MIN_POLL_INTERVAL)),
        stop=stop_after_delay(timeout),
        reraise=True,
    )
    def poll() -> bool:
        state = runtime.inspect_container(container_id).get("State") or {}
        if state.get("Dead") or (
            not state.get("Running")
            and not state.get("Restarting")
            and state.get("Status") == "exited"
        ):
            raise ContainerSetupError(
                f"Container {container_id} failed to start with exit code: {state.get('ExitCode')}"
            )

        health = state.get("Health")
        if health and health.get("Status") not in ("none", "healthy"):
            return False
        return bool(state.get("Running"))

    try:
        poll()
    except RetryError as e:
        raise ContainerSetupError(
            f"Container {container_id} did not start within {timeout} seconds"
        ) from e
