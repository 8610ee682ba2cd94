"""
Builds an image stack layer by layer, from its base up to the target.
"""
import logging
from typing import Any, Optional

from ..errors import BuildError
from ..RUNTIME.docker_client import RuntimeClient
from .build_context import docker_build
from .layer_stack import ImageStack

logger = logging.getLogger(__name__)


class StackBuilder:
    """
    Pulls the base of a stack and builds every layer above it.
    """

    def __init__(self, stack: ImageStack, runtime: RuntimeClient,
                 output: Optional[Any] = None, force_remove: bool = True):
        """
        :param stack: Resolved (and usually rebased) image stack.
        :param runtime: Runtime client.
        :param output: Receives pull and build progress.
        :param force_remove: Always remove intermediate containers.
        """
        self.stack = stack
        self.runtime = runtime
        self.output = output
        self.force_remove = force_remove

    def build(self) -> None:
        """
        Builds the stack bottom-up, each layer with its exact Dockerfile text.

        :raises BuildError: If a layer above the base has no known source.
        """
        layers = self.stack.layers
        for layer in layers[:-1]:
            if layer.dockerfile is None:
                raise BuildError(f"Cannot build, do not know the source for {layer.reference}")

        base = self.stack.base
        if base.dockerfile is None and not base.reference.is_scratch:
            logger.debug("Pulling base %s", base.reference)
            self.runtime.pull(str(base.reference), self.output)

        start = len(layers) - 2 if base.dockerfile is None else len(layers) - 1
        for i in range(start, -1, -1):
            layer = layers[i]
            source = layer.to_dockerfile()
            logger.info("Building layer %s", layer.reference)
            if self.output is not None:
                self.output.write(source if source.endswith("\n") else source + "\n")
            docker_build(
                self.runtime,
                layer.path,
                str(layer.reference),
                self.output,
                dockerfile_text=source,
                forcerm=self.force_remove,
            )
