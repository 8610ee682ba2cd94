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
Resolution of official library images to the source of their Dockerfiles.

The docker-library/official-images repository holds one manifest per image
under library/<name>. Each entry maps a set of tags to a git repository,
commit and directory containing the Dockerfile.
"""
import functools
import logging
import os
import shutil
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from ..errors import CommandError, SourceFetchError
from ..REGISTRY.image_reference import ImageReference
from ..RUNNERS.exec_cmd import exec_cmd

logger = logging.getLogger(__name__)

LIBRARY_REPO = "https://github.com/docker-library/official-images.git"

GitRunner = Callable[..., object]


@dataclass
class LibraryTag:
    """
    One manifest entry: the tags it publishes and where its source lives.
    """
    tags: List[str] = field(default_factory=list)
    shared_tags: List[str] = field(default_factory=list)
    git_repo: str = ""
    git_fetch: str = ""
    git_commit: str = ""
    directory: str = "."


@dataclass
class LibraryManifest:
    """
    A parsed library/<name> manifest.
    """
    entries: List[LibraryTag] = field(default_factory=list)

    def get_tag(self, tag: str) -> Optional[LibraryTag]:
        """
        Finds the entry publishing a tag, preferring direct tags over shared ones.
        """
        for entry in self.entries:
            if tag in entry.tags:
                return entry
        for entry in self.entries:
            if tag in entry.shared_tags:
                return entry
        return None


_FIELDS = {
    "gitrepo": "git_repo",
    "gitfetch": "git_fetch",
    "gitcommit": "git_commit",
    "directory": "directory",
}


def _split_list(value: str) -> List[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_blocks(text: str) -> List[Dict[str, str]]:
    blocks: List[Dict[str, str]] = []
    current: Dict[str, str] = {}
    last_key = None
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        if not line.strip():
            if current:
                blocks.append(current)
            current, last_key = {}, None
            continue
        if line[0] in " \t" and last_key:
            current[last_key] += " " + line.strip()
            continue
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        last_key = key.strip().lower()
        current[last_key] = value.strip()
    if current:
        blocks.append(current)
    return blocks


def parse_library_manifest(text: str) -> LibraryManifest:
    """
    Parses an official-images manifest in its RFC 2822 style format.

    The first block may carry global defaults (GitRepo, GitFetch, GitCommit,
    Directory) that every entry inherits unless it overrides them.
    """
    manifest = LibraryManifest()
    defaults: Dict[str, str] = {}
    for index, block in enumerate(_parse_blocks(text)):
        if "tags" not in block and "sharedtags" not in block:
            if index == 0:
                defaults = block
            continue
        merged = {**defaults, **block}
        entry = LibraryTag(
            tags=_split_list(block.get("tags", "")),
            shared_tags=_split_list(block.get("sharedtags", "")),
        )
        for key, attr in _FIELDS.items():
            if merged.get(key):
                setattr(entry, attr, merged[key])
        manifest.entries.append(entry)
    return manifest


class LibraryResolver:
    """
    Resolves the Dockerfile source directory of official library images.
    """

    def __init__(self, library_path: str, repository_dir: str, git: Optional[GitRunner] = None):
        """
        :param library_path: Directory holding the library/<name> manifests.
        :param repository_dir: Directory where image source repositories are cloned.
        :param git: Callable running git with the given arguments.
        """
        self.library_path = library_path
        self.repository_dir = repository_dir
        self.git = git or functools.partial(exec_cmd, "git")
        self._lock = threading.Lock()

    @classmethod
    def build(cls, cache_dir: str, git: Optional[GitRunner] = None) -> "LibraryResolver":
        """
        Clones (or refreshes) the official-images repository inside cache_dir.

        :raises CommandError: If the repository cannot be cloned.
        """
        git = git or functools.partial(exec_cmd, "git")
        repo_dir = os.path.join(cache_dir, "official-images")
        if os.path.isdir(os.path.join(repo_dir, ".git")):
            try:
                git("-C", repo_dir, "fetch", "origin")
                git("-C", repo_dir, "checkout", "--force", "origin/master")
            except CommandError as e:
                logger.warning("Unable to refresh %s, using existing checkout: %s", repo_dir, e)
        else:
            shutil.rmtree(repo_dir, ignore_errors=True)
            logger.debug("Cloning %s", LIBRARY_REPO)
            git("clone", "--depth", "1", LIBRARY_REPO, repo_dir)
        return cls(os.path.join(repo_dir, "library"), cache_dir, git=git)

    def get_manifest(self, name: str) -> LibraryManifest:
        """
        Loads the manifest of a library image by bare name (e.g. 'alpine').
        """
        manifest_path = os.path.join(self.library_path, name)
        try:
            with open(manifest_path, "r") as f:
                return parse_library_manifest(f.read())
        except OSError as e:
            raise SourceFetchError(f"No library manifest for {name}: {e}") from e

    def get_library_source(self, ref: ImageReference) -> str:
        """
        Fetches the source tree of a library image and returns its Dockerfile directory.

        :param ref: Library image reference, e.g. library/alpine:3.10.
        :raises SourceFetchError: If the image or tag is not in the library.
        :raises CommandError: If cloning the image's repository fails.
        """
        name = ref.repository
        if name.startswith("library/"):
            name = name[len("library/"):]
        tag_name = ref.tag or ImageReference.DEFAULT_TAG

        logger.debug("Consulting manifest for %s", ref)
        tag = self.get_manifest(name).get_tag(tag_name)
        if tag is None:
            raise SourceFetchError(f"Cannot find tag {tag_name} in library repo {name}")
        if not tag.git_repo:
            raise SourceFetchError(f"Library entry for {name}:{tag_name} has no GitRepo")

        repo_path = os.path.join(self.repository_dir, "library-" + name)
        with self._lock:
            if not os.path.isdir(os.path.join(repo_path, ".git")):
                shutil.rmtree(repo_path, ignore_errors=True)
                logger.debug("Cloning %s into %s", tag.git_repo, repo_path)
                self.git("clone", "--recurse-submodules", tag.git_repo, repo_path)

            if tag.git_commit:
                logger.debug("Checking out %s", tag.git_commit)
                try:
                    if tag.git_fetch:
                        self.git("-C", repo_path, "fetch", "origin", tag.git_fetch)
                    self.git("-C", repo_path, "checkout", "--force", tag.git_commit)
                except CommandError as e:
                    logger.warning("Unable to checkout %s, using current tree: %s", tag.git_commit, e)

        return os.path.normpath(os.path.join(repo_path, tag.directory))
