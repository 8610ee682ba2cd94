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
Expresses a Dockerfile's FROM chain as an ordered stack of image layers.

Layer 0 is the target image; each following layer is the base of the one
before it. Layers with a Dockerfile are build targets, layers without one
are pulled.
"""
import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Tuple

from ..errors import CoreprovError, DockerfileParseError
from ..MODELS.dockerfile_ast import DockerfileAST, Instruction
from ..PARSERS.dockerfile_parser import DockerfileParser
from ..REGISTRY.arch import KnownArch, compatible_base_image
from ..REGISTRY.image_reference import ImageReference

logger = logging.getLogger(__name__)

# Guards against library Dockerfiles that chain back onto themselves.
MAX_STACK_DEPTH = 64


class LibrarySourceResolver(Protocol):
    """Resolves a library image reference to its Dockerfile directory."""

    def get_library_source(self, ref: ImageReference) -> str: ...


def _from_image_index(inst: Instruction) -> int:
    """
    Index of the image argument of a FROM instruction, skipping --flags.
    """
    for i, arg in enumerate(inst.arguments):
        if not arg.startswith("--"):
            return i
    raise DockerfileParseError(f"Dockerfile FROM line is invalid: {inst.raw}")


@dataclass(frozen=True)
class ImageLayer:
    """
    One image in a FROM chain.

    source_lines holds the original Dockerfile text split into physical lines
    with their line endings, so the text can be reproduced byte for byte.
    """
    reference: ImageReference
    dockerfile: Optional[DockerfileAST] = None
    source_lines: Tuple[str, ...] = ()
    path: str = ""
    from_instruction: Optional[Instruction] = None

    @classmethod
    def from_source(cls, reference: ImageReference, source: str, path: str = "") -> "ImageLayer":
        """
        Builds a build-target layer from Dockerfile text.
        """
        ast = DockerfileParser().parse_ast(source)
        return cls(
            reference=reference,
            dockerfile=ast,
            source_lines=tuple(source.splitlines(keepends=True)),
            path=path,
            from_instruction=ast.first_from(),
        )

    @property
    def is_build_target(self) -> bool:
        return self.dockerfile is not None

    def base_reference(self) -> ImageReference:
        """
        The image this layer's Dockerfile is built FROM.

        :raises DockerfileParseError: If there is no FROM line or it is malformed.
        """
        inst = self.from_instruction
        if inst is None:
            raise DockerfileParseError(f"Dockerfile for {self.reference} did not have a FROM line")
        image = inst.arguments[_from_image_index(inst)]
        try:
            return ImageReference.parse(image)
        except ValueError as e:
            raise DockerfileParseError(f"Error parsing FROM line {inst.raw!r}: {e}") from e

    def with_rewritten_from(self, ref: ImageReference) -> "ImageLayer":
        """
        Returns a copy whose FROM line points at ref.

        Only the physical lines of the FROM instruction are replaced; every
        other line is copied unchanged. Layers without a Dockerfile are
        returned as is.
        """
        inst = self.from_instruction
        if self.dockerfile is None or inst is None:
            return self

        args = list(inst.arguments)
        args[_from_image_index(inst)] = str(ref)
        start, end = inst.start_line - 1, inst.end_line - 1
        original = self.source_lines[start]
        last = self.source_lines[end]
        ending = last[len(last.rstrip("\r\n")):]
        indent = original[:len(original) - len(original.lstrip())]
        keyword = original.lstrip()[:4]

        lines = list(self.source_lines[:start])
        lines.append(f"{indent}{keyword} {' '.join(args)}{ending}")
        lines.extend(self.source_lines[end + 1:])
        return ImageLayer.from_source(self.reference, "".join(lines), self.path)

    def as_pull_target(self, ref: ImageReference) -> "ImageLayer":
        """
        Returns a layer for ref with no Dockerfile, to be pulled rather than built.
        """
        return ImageLayer(reference=ref)

    def to_dockerfile(self) -> str:
        """
        Reproduces the layer's Dockerfile source.
        """
        return "".join(self.source_lines)


@dataclass
class ImageStack:
    """
    An image expressed as a stack of layers, from the target down to its base.
    """
    reference: ImageReference
    layers: List[ImageLayer] = field(default_factory=list)

    @property
    def base(self) -> ImageLayer:
        return self.layers[-1]

    def rebase_on_arch(self, target: KnownArch) -> bool:
        """
        Rebases the stack onto an image compatible with the target architecture.

        Layers are scanned from the base upwards. The first base layer with a
        known substitute becomes the new base: the stack is truncated there,
        the layer is replaced by a pull target for the substitute (keeping its
        tag) and the FROM line of the layer above, if any, is rewritten. The
        target itself may be substituted, leaving a single pull target.

        :return: True if the stack was rebased.
        """
        if target in (KnownArch.NONE, KnownArch.AMD64):
            return False

        for i in range(len(self.layers) - 1, -1, -1):
            layer = self.layers[i]
            if layer.reference.is_scratch:
                continue
            substitute, ok = compatible_base_image(target, layer.reference.path)
            if not ok:
                continue

            tag = layer.reference.tag or ImageReference.DEFAULT_TAG
            new_ref = ImageReference.parse(f"{substitute}:{tag}")
            logger.debug("Rebasing using %s -> %s", layer.reference, new_ref)
            del self.layers[i + 1:]
            self.layers[i] = layer.as_pull_target(new_ref)
            if i > 0:
                self.layers[i - 1] = self.layers[i - 1].with_rewritten_from(new_ref)
            return True
        return False

    def describe(self) -> str:
        """
        One-line rendering, pull targets marked with [pull].
        """
        parts = []
        for layer in self.layers:
            text = str(layer.reference)
            if layer.dockerfile is None and not layer.reference.is_scratch:
                text += " [pull]"
            parts.append(text)
        return " ".join(parts)

    def to_dockerfile(self) -> str:
        """
        Produces the series of Dockerfiles representing the stack.
        """
        return "\n---\n".join(layer.to_dockerfile() for layer in self.layers)

    def __str__(self) -> str:
        return self.describe()


def image_stack_from_path(build_path: str, dockerfile_path: str, target_tag: str,
                          resolver: Optional[LibrarySourceResolver],
                          rebase_arch: KnownArch = KnownArch.NONE) -> ImageStack:
    """
    Determines the full stack of a Docker image by walking its FROM chain.

    :param build_path: Build context of the target image.
    :param dockerfile_path: Dockerfile path, relative to build_path unless absolute.
    :param target_tag: Reference the target image will be tagged with.
    :param resolver: Resolver for library image sources, or None to stop at the first base.
    :param rebase_arch: When set, known arch-compatible bases become pull targets as they are found.
    :raises DockerfileParseError: On a missing or malformed FROM line.
    """
    try:
        image_ref = ImageReference.parse(target_tag)
    except ValueError as e:
        raise DockerfileParseError(f"Invalid target tag {target_tag!r}: {e}") from e

    dockerfile_path = os.path.normpath(dockerfile_path or "Dockerfile")
    if not os.path.isabs(dockerfile_path):
        dockerfile_path = os.path.join(build_path, dockerfile_path)

    with open(dockerfile_path, "r") as f:
        source = f.read()

    stack = ImageStack(reference=image_ref)
    stack.layers.append(ImageLayer.from_source(image_ref, source, path=build_path))
    _resolve_chain(stack, resolver, rebase_arch)
    return stack


def _resolve_chain(stack: ImageStack, resolver: Optional[LibrarySourceResolver],
                   rebase_arch: KnownArch) -> None:
    while True:
        layer = stack.layers[-1]
        if layer.dockerfile is None or layer.reference.is_scratch:
            return
        if len(stack.layers) >= MAX_STACK_DEPTH:
            raise DockerfileParseError(f"FROM chain of {stack.reference} is deeper than {MAX_STACK_DEPTH}")

        ref = layer.base_reference()
        stack.layers.append(ImageLayer(reference=ref))
        if ref.is_scratch:
            return

        if not ref.tag and not ref.digest:
            logger.debug("No tag given for %s, assuming latest", ref)
            ref = ref.with_tag(ImageReference.DEFAULT_TAG)
            stack.layers[-1] = ImageLayer(reference=ref)

        if rebase_arch != KnownArch.NONE:
            substitute, ok = compatible_base_image(rebase_arch, ref.path)
            if ok:
                new_ref = ImageReference.parse(f"{substitute}:{ref.tag or ImageReference.DEFAULT_TAG}")
                stack.layers[-1] = ImageLayer(reference=new_ref)
                if new_ref != ref:
                    stack.layers[-2] = stack.layers[-2].with_rewritten_from(new_ref)
                return

        if not ref.is_library:
            logger.debug("%s is not a library image, cannot determine Dockerfile source", ref)
            return
        if resolver is None:
            return

        try:
            src_path = resolver.get_library_source(ref)
        except (CoreprovError, OSError) as e:
            logger.warning("Unable to resolve library source for %s: %s", ref, e)
            return

        df_path = os.path.join(src_path, "Dockerfile")
        try:
            with open(df_path, "r") as f:
                source = f.read()
        except OSError as e:
            logger.warning("Unable to find Dockerfile for %s at %s: %s", ref, df_path, e)
            return

        stack.layers[-1] = ImageLayer.from_source(ref, source, path=src_path)
