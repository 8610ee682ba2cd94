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
Fan-out writer that copies progress output to a changing set of observers.
"""
import logging
import threading
from typing import Any, List

logger = logging.getLogger(__name__)


class MultiWriter:
    """
    Writes every chunk to all registered writers.

    Writers may be added and removed while writes are in flight. A writer
    that fails is logged and skipped; the remaining writers still receive
    the data.
    """

    def __init__(self, *writers: Any):
        self._lock = threading.Lock()
        self._writers: List[Any] = [w for w in writers if w is not None]

    def add_writer(self, writer: Any) -> None:
        """
        Registers a writer. None is ignored.
        """
        if writer is None:
            return
        with self._lock:
            self._writers.append(writer)

    def remove_writer(self, writer: Any) -> None:
        """
        Unregisters one registration of a writer. Unknown writers are ignored.
        """
        if writer is None:
            return
        with self._lock:
            for i, existing in enumerate(self._writers):
                if existing is writer:
                    del self._writers[i]
                    break

    def write(self, data: str) -> int:
        """
        Writes data to every writer.

        :return: Length of data, regardless of individual writer failures.
        """
        with self._lock:
            for writer in self._writers:
                try:
                    writer.write(data)
                except Exception as e:
                    logger.warning("Dropping output for writer %r: %s", writer, e)
        return len(data)

    def flush(self) -> None:
        with self._lock:
            for writer in self._writers:
                flush = getattr(writer, "flush", None)
                if flush is None:
                    continue
                try:
                    flush()
                except Exception as e:
                    logger.warning("Unable to flush writer %r: %s", writer, e)

    def __len__(self) -> int:
        with self._lock:
            return len(self._writers)
