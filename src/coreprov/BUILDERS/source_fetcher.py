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
Fetching of image build sources: git clones, tarballs and local directories.
"""
import functools
import logging
import os
import shutil
import tarfile
from enum import Enum
from typing import BinaryIO, Callable, Optional
from urllib.error import URLError
from urllib.request import urlopen

from ..errors import CommandError, ConfigError, PathTraversalError, SourceFetchError
from ..RUNNERS.exec_cmd import exec_cmd

logger = logging.getLogger(__name__)

_URL_PREFIXES = ("http://", "https://")


class SourceKind(str, Enum):
    """
    Transport used to obtain a build source.
    """
    GIT = "git"
    TARBALL = "tarball"
    PATH = "path"


def classify_source(source: str) -> SourceKind:
    """
    Determines how a source locator should be fetched.

    - git:// URLs and http(s) URLs ending in .git are cloned.
    - Paths and http(s) URLs ending in .tar.gz are extracted.
    - Absolute local paths are copied.

    :raises ConfigError: If the source is empty or of an unrecognized kind.
    """
    if not source:
        raise ConfigError("No source specified")
    if source.startswith("git://") or (source.startswith(_URL_PREFIXES) and source.endswith(".git")):
        return SourceKind.GIT
    if source.endswith(".tar.gz"):
        return SourceKind.TARBALL
    if os.path.isabs(source):
        return SourceKind.PATH
    raise ConfigError(f"Unrecognized source kind: {source}")


def _within(root: str, path: str) -> bool:
    return path == root or path.startswith(root + os.sep)


class SourceFetcher:
    """
    Populates a destination directory from a source locator.
    """

    def __init__(self, git: Optional[Callable[..., object]] = None,
                 opener: Callable[..., BinaryIO] = urlopen):
        """
        :param git: Callable running git with the given arguments.
        :param opener: URL opener used for remote tarballs.
        """
        self.git = git or functools.partial(exec_cmd, "git")
        self.opener = opener

    def fetch(self, destination: str, source: str) -> None:
        """
        Fetches source into destination.

        :raises ConfigError: If the source kind is not recognized.
        :raises SourceFetchError: If the transfer fails.
        """
        kind = classify_source(source)
        if kind == SourceKind.GIT:
            self.fetch_git(destination, source)
        elif kind == SourceKind.TARBALL:
            self.fetch_tarball(destination, source)
        else:
            self.fetch_path(destination, source)

    def fetch_git(self, destination: str, source: str) -> None:
        logger.debug("Cloning %s", source)
        try:
            self.git("clone", "--recurse-submodules", source, destination)
        except CommandError as e:
            raise SourceFetchError(f"Unable to clone {source}: {e}") from e

    def fetch_tarball(self, destination: str, source: str) -> None:
        """
        Downloads (for URLs) and extracts a gzipped tarball.
        """
        try:
            if source.startswith(_URL_PREFIXES):
                logger.debug("Fetching & extracting %s", source)
                with self.opener(source, timeout=60) as response:
                    self.extract_tarball(response, destination)
            else:
                logger.debug("Extracting %s", source)
                with open(source, "rb") as f:
                    self.extract_tarball(f, destination)
        except (OSError, URLError, tarfile.TarError) as e:
            raise SourceFetchError(f"Unable to extract {source}: {e}") from e

    @staticmethod
    def extract_tarball(fileobj: BinaryIO, destination: str) -> None:
        """
        Stream-extracts a gzipped tar archive into destination.

        Entries are checked before anything is written for them: names with a
        '..' segment, absolute names and links pointing outside destination
        are rejected.

        :raises PathTraversalError: On an entry escaping destination.
        """
        root = os.path.realpath(destination)
        os.makedirs(root, exist_ok=True)

        with tarfile.open(fileobj=fileobj, mode="r|gz") as tar:
            for member in tar:
                name = member.name
                if ".." in name.replace("\\", "/").split("/"):
                    raise PathTraversalError(f"Archive entry cannot contain ..: {name}")
                if os.path.isabs(name):
                    raise PathTraversalError(f"Archive entry cannot be absolute: {name}")
                target = os.path.realpath(os.path.join(root, name))
                if not _within(root, target):
                    raise PathTraversalError(f"Archive entry escapes destination: {name}")

                if member.isdir():
                    os.makedirs(target, exist_ok=True)
                    os.chmod(target, (member.mode & 0o7777) | 0o700)
                elif member.isfile():
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    src = tar.extractfile(member)
                    with open(target, "wb") as out:
                        shutil.copyfileobj(src, out)
                    os.chmod(target, member.mode & 0o7777)
                elif member.issym():
                    link_target = os.path.realpath(os.path.join(os.path.dirname(target), member.linkname))
                    if os.path.isabs(member.linkname) or not _within(root, link_target):
                        raise PathTraversalError(f"Archive link escapes destination: {name} -> {member.linkname}")
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    os.symlink(member.linkname, target)
                elif member.islnk():
                    link_target = os.path.realpath(os.path.join(root, member.linkname))
                    if not _within(root, link_target):
                        raise PathTraversalError(f"Archive link escapes destination: {name} -> {member.linkname}")
                    os.makedirs(os.path.dirname(target), exist_ok=True)
                    os.link(link_target, target)
                else:
                    logger.debug("Skipping special archive entry %s", name)

    def fetch_path(self, destination: str, source: str) -> None:
        """
        Recursively copies a local directory, preserving modes and symlinks.
        """
        if not os.path.isdir(source):
            raise SourceFetchError(f"Cannot sync from {source}, not a directory.")
        logger.debug("Syncing %s to %s", source, destination)
        try:
            shutil.copytree(source, destination, symlinks=True, dirs_exist_ok=True)
        except (OSError, shutil.Error) as e:
            raise SourceFetchError(f"Unable to copy {source}: {e}") from e
