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
Exception hierarchy shared by the provisioning jobs, builders and parsers.
"""


class CoreprovError(Exception):
    """Base class for all provisioning errors."""


class ConfigError(CoreprovError):
    """The configuration references something that does not exist or is malformed."""


class SourceFetchError(CoreprovError):
    """Fetching a build source failed."""


class PathTraversalError(SourceFetchError):
    """An archive entry would be written outside the destination directory."""


class DockerfileParseError(CoreprovError):
    """A Dockerfile could not be interpreted."""


class BuildError(CoreprovError):
    """An image build failed."""


class PullError(CoreprovError):
    """An image pull failed."""


class ImageNotFoundError(CoreprovError):
    """An image is absent and there is no way to obtain it."""


class ContainerSetupError(CoreprovError):
    """A container could not be created or started."""


class UserSetupError(CoreprovError):
    """A host user account could not be provisioned."""


class CommandError(CoreprovError):
    """A host command exited with a non-zero status."""

    def __init__(self, command, returncode: int):
        self.command = list(command)
        self.returncode = returncode
        super().__init__(f"Command {' '.join(self.command)} exited with status {returncode}")


class RuntimeClientError(CoreprovError):
    """The container runtime API returned an error."""
