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
Normalized image references as written in FROM lines and image names.
"""
import re
from dataclasses import dataclass, replace
from typing import Optional, Tuple

DEFAULT_REGISTRY = "docker.io"
DEFAULT_TAG = "latest"
SCRATCH = "scratch"
LIBRARY_PREFIX = "library/"

_COMPONENT_RE = re.compile(r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$")
_TAG_RE = re.compile(r"^\w[\w.-]{0,127}$")


def _split_digest(reference: str) -> Tuple[str, Optional[str]]:
    name, sep, digest = reference.rpartition("@")
    if not sep:
        return reference, None
    return name, digest


def _split_tag(name: str) -> Tuple[str, Optional[str]]:
    # The colon of a registry port is always followed by a slash.
    head, sep, tail = name.rpartition(":")
    if not sep or "/" in tail:
        return name, None
    return head, tail


def _split_registry(name: str) -> Tuple[str, str]:
    first, sep, rest = name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    return DEFAULT_REGISTRY, name


@dataclass(frozen=True)
class ImageReference:
    """
    An image reference split into registry, repository, tag and digest.

    Docker Hub names are fully qualified: ``alpine`` is
    ``docker.io/library/alpine``. ``scratch`` has no registry and is never
    pulled.
    """
    registry: str
    repository: str
    tag: Optional[str] = None
    digest: Optional[str] = None

    DEFAULT_REGISTRY = DEFAULT_REGISTRY
    DEFAULT_TAG = DEFAULT_TAG
    SCRATCH = SCRATCH

    @classmethod
    def parse(cls, reference: str, default_tag: bool = True) -> "ImageReference":
        """
        :param reference: e.g. ``alpine:3.10``, ``localhost:5000/app:v1``, ``app@sha256:...``.
        :param default_tag: Tag as ``latest`` when neither tag nor digest is given.
        :raises ValueError: If the reference is empty or malformed.
        """
        text = (reference or "").strip()
        if not text:
            raise ValueError("Empty image reference")
        if text == SCRATCH:
            return cls(registry="", repository=SCRATCH)

        name, digest = _split_digest(text)
        name, tag = _split_tag(name)
        registry, repository = _split_registry(name)
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = LIBRARY_PREFIX + repository

        if not all(_COMPONENT_RE.match(c) for c in repository.split("/")):
            raise ValueError(f"Invalid image reference: {text!r}")
        if tag is not None and not _TAG_RE.match(tag):
            raise ValueError(f"Invalid tag in image reference: {text!r}")

        if default_tag and not tag and not digest:
            tag = DEFAULT_TAG
        return cls(registry=registry, repository=repository, tag=tag, digest=digest)

    @property
    def is_scratch(self) -> bool:
        return self.repository == SCRATCH and not self.registry

    @property
    def is_library(self) -> bool:
        """Official Docker Hub image, resolvable through the library manifests."""
        return self.registry == DEFAULT_REGISTRY and self.repository.startswith(LIBRARY_PREFIX)

    @property
    def path(self) -> str:
        """
        The name without tag, and without the registry when it is Docker Hub:
        ``docker.io/library/alpine:3.10`` gives ``library/alpine``.
        """
        if self.registry in ("", DEFAULT_REGISTRY):
            return self.repository
        return f"{self.registry}/{self.repository}"

    def with_tag(self, tag: str) -> "ImageReference":
        return replace(self, tag=tag, digest=None)

    def _qualify(self, name: str) -> str:
        if self.digest:
            return f"{name}@{self.digest}"
        if self.tag:
            return f"{name}:{self.tag}"
        return name

    @property
    def full_name(self) -> str:
        if self.is_scratch:
            return SCRATCH
        return self._qualify(f"{self.registry}/{self.repository}")

    @property
    def short_name(self) -> str:
        """The familiar form: Docker Hub registry and ``library/`` dropped."""
        if self.is_scratch:
            return SCRATCH
        if self.registry != DEFAULT_REGISTRY:
            return self.full_name
        repository = self.repository
        if repository.startswith(LIBRARY_PREFIX):
            repository = repository[len(LIBRARY_PREFIX):]
        return self._qualify(repository)

    def __str__(self) -> str:
        return self.short_name

    def __repr__(self) -> str:
        return f"ImageReference({self.full_name})"
