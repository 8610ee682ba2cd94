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
Common execute/wait contract of the setup jobs, and the waiter interfaces
through which dependent jobs learn the outcome of their dependencies.
"""
import threading
from typing import Any, Optional, Protocol, Tuple

from ..RUNTIME.docker_client import ExecResult
from ..UTILS.multi_writer import MultiWriter


class ImageWaiter(Protocol):
    """Blocks until an image job has finished."""

    def wait_for_image(self, ref: str, writer: Any = None) -> Optional[Exception]: ...


class ContainerWaiter(Protocol):
    """Blocks until a container job has finished, and runs commands in containers."""

    def wait_for_container(self, name: str, writer: Any = None) -> Tuple[str, Optional[Exception]]: ...

    def check_has_container(self, name: str) -> bool: ...

    def exec_cmd_container(self, container_id: str, user: str, command: str, *args: str) -> ExecResult: ...


class SetupJob:
    """
    A unit of reconciliation run once on its own thread.

    execute() runs the job body and records the exception it raised, if any,
    as the job's terminal error. Completion is signaled exactly once; any
    number of threads may wait() on it, before or after it fires.
    """

    def __init__(self, *writers: Any):
        """
        :param writers: Initial observers of the job's output.
        """
        self.log = MultiWriter(*writers)
        self.error: Optional[Exception] = None
        self._done = threading.Event()
        self._start_lock = threading.Lock()
        self._started = False

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def execute(self) -> Optional[Exception]:
        """
        Runs the job. Calling it again only waits for the first run.

        :return: The terminal error, None on success.
        """
        with self._start_lock:
            first_run = not self._started
            self._started = True
        if not first_run:
            self._done.wait()
            return self.error

        try:
            self._run()
        except Exception as e:
            self.error = e
            self._failed(e)
        finally:
            self._done.set()
        return self.error

    def wait(self, writer: Any = None) -> Optional[Exception]:
        """
        Blocks until the job has finished, streaming its output to writer meanwhile.

        :param writer: Observer attached to the job's output while waiting.
        :return: The terminal error, None on success.
        """
        self.log.add_writer(writer)
        try:
            self._done.wait()
        finally:
            self.log.remove_writer(writer)
        return self.error

    def _run(self) -> None:
        raise NotImplementedError

    def _failed(self, error: Exception) -> None:
        """Hook called with the terminal error before completion is signaled."""
