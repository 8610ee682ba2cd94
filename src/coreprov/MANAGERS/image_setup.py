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
Ensures a configured image is present, pulling or building it per its policy.
"""
import logging
from typing import Any, Callable, Optional

from ..BUILDERS.image_builder import ImageBuilder
from ..errors import CoreprovError, ImageNotFoundError
from ..MODELS.config import ImageBuildSpec, ImageSpec, PullPolicy
from ..RUNTIME.docker_client import RuntimeClient
from .job import SetupJob

logger = logging.getLogger(__name__)

BuilderFactory = Callable[[ImageBuildSpec, str, RuntimeClient, Any], ImageBuilder]

# Failures that a fallback (build after pull, pull after build) may recover from.
RECOVERABLE_ERRORS = (CoreprovError, OSError)


class ImageSetup(SetupJob):
    """
    Reconciles one image.

    - No pull and no build config: the image must already exist.
    - always / ifnotpresent: pull (always pulls even when present), then
      build if the pull failed and the image is absent.
    - ifbuildfails: build if absent, then pull once if the build failed.
    """

    def __init__(self, spec: ImageSpec, runtime: RuntimeClient, output: Optional[Any] = None,
                 builder_factory: Optional[BuilderFactory] = None):
        """
        :param spec: The image to reconcile.
        :param runtime: Runtime client.
        :param output: Observer receiving pull and build output for the job's lifetime.
        :param builder_factory: Creates the ImageBuilder used for builds.
        """
        super().__init__(output)
        self.spec = spec
        self.runtime = runtime
        self.builder_factory = builder_factory or ImageBuilder
        self.pull_attempts = 0
        self.build_attempts = 0

    @property
    def name(self) -> str:
        return self.spec.name

    def exists(self) -> bool:
        """
        Checks for an image carrying exactly this job's name as a repo tag.
        """
        return self.name in self.runtime.list_image_tags()

    def pull(self) -> None:
        self.pull_attempts += 1
        ref = self.spec.pull.reference(self.name)
        try:
            self.runtime.pull(ref, self.log)
        except RECOVERABLE_ERRORS as e:
            logger.error("Cannot pull %s: %s", ref, e)
            raise

    def build(self) -> None:
        self.build_attempts += 1
        try:
            builder = self.builder_factory(self.spec.build, self.name, self.runtime, self.log)
            builder.build()
        except RECOVERABLE_ERRORS as e:
            logger.error("Cannot build %s: %s", self.name, e)
            raise

    def _run(self) -> None:
        exists = self.exists()
        logger.debug("Image %s exists? %s", self.name, exists)

        pull, build = self.spec.pull, self.spec.build
        if pull is None and build is None:
            if not exists:
                raise ImageNotFoundError(
                    f"Image {self.name} not found and no pull or build config specified."
                )
            return

        if pull is not None and pull.policy == PullPolicy.IF_BUILD_FAILS:
            if exists:
                return
            if build is None:
                self.pull()
                return
            try:
                self.build()
            except RECOVERABLE_ERRORS as build_error:
                try:
                    self.pull()
                except RECOVERABLE_ERRORS:
                    raise build_error
            return

        pull_error = None
        if pull is not None and (not exists or pull.policy == PullPolicy.ALWAYS):
            try:
                self.pull()
                return
            except RECOVERABLE_ERRORS as e:
                pull_error = e

        if exists:
            return
        if build is None:
            raise pull_error
        self.build()

    def _failed(self, error: Exception) -> None:
        self.log.write(f"Image setup failed with error:\n{error}\n")
