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
Image build pipeline: fetch the source, then build it directly or layer by layer.
"""
import logging
import os
import shutil
import tempfile
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from ..errors import BuildError
from ..MODELS.config import ImageBuildSpec
from ..REGISTRY.arch import detect_arch
from ..RUNTIME.docker_client import RuntimeClient
from .build_context import docker_build
from .layer_stack import image_stack_from_path
from .library_cache import LibraryCache, library_cache
from .source_fetcher import SourceFetcher
from .stack_builder import StackBuilder

logger = logging.getLogger(__name__)


class ImageBuilder:
    """
    Builds one configured image from its source.
    """

    def __init__(self, spec: ImageBuildSpec, image_name: str, runtime: RuntimeClient,
                 output: Optional[Any] = None, fetcher: Optional[SourceFetcher] = None,
                 cache: Optional[LibraryCache] = None, arch_override: Optional[str] = None):
        """
        :param spec: Build settings of the image.
        :param image_name: Tag given to the built image.
        :param runtime: Runtime client performing pulls and builds.
        :param output: Receives build progress.
        :param fetcher: Source fetcher, a SourceFetcher by default.
        :param cache: Library cache for scratch builds, the process-wide one by default.
        :param arch_override: Architecture name overriding host detection.
        """
        self.spec = spec
        self.image_name = image_name
        self.runtime = runtime
        self.output = output
        self.fetcher = fetcher or SourceFetcher()
        self.cache = cache
        self.arch_override = arch_override

    def build(self) -> None:
        """
        Fetches the source into a temporary directory and builds it.

        The temporary directory is removed whether or not the build succeeds.
        """
        tmp_dir = tempfile.mkdtemp(prefix="coreprov-build-")
        try:
            self.fetcher.fetch(tmp_dir, self.spec.source)
            build_path = os.path.join(tmp_dir, self.spec.root) if self.spec.root else tmp_dir
            self.build_path(os.path.normpath(build_path))
        finally:
            shutil.rmtree(tmp_dir, ignore_errors=True)

    def build_path(self, path: str) -> None:
        """
        Builds the image from an already populated build context.

        :param path: Build context directory.
        """
        if not os.path.isdir(path):
            raise BuildError(f"Build root {path} does not exist in the source of {self.image_name}")
        if self.spec.scratch_build:
            self._scratch_build(path)
        else:
            self._direct_build(path)

    def _direct_build(self, path: str) -> None:
        logger.info("Building %s from %s", self.image_name, path)
        buildargs = {k: v for k, v in self.spec.build_args.items() if v is not None}
        docker_build(
            self.runtime,
            path,
            self.image_name,
            self.output,
            dockerfile=self.spec.dockerfile or "Dockerfile",
            forcerm=not self.spec.preserve_intermediate,
            squash=self.spec.squash,
            buildargs=buildargs,
        )

    def _scratch_build(self, path: str) -> None:
        """
        Rebuilds the whole FROM chain on architecture-specific bases.
        """
        cache = self.cache or library_cache()
        with cache.library() as resolver:
            arch = detect_arch(self.arch_override)
            logger.debug("Scratch building %s for %s", self.image_name, arch.value)
            stack = image_stack_from_path(
                path, self.spec.dockerfile or "Dockerfile", self.image_name, resolver, arch,
            )
            stack.rebase_on_arch(arch)
            logger.info("Image stack: %s", stack)
            if self.output is not None:
                self.output.write(f"Image stack: {stack}\n")

            builder = StackBuilder(
                stack, self.runtime, self.output,
                force_remove=not self.spec.preserve_intermediate,
            )
            with ThreadPoolExecutor(max_workers=1, thread_name_prefix="scratch-build") as executor:
                future = executor.submit(builder.build)
                future.result()
