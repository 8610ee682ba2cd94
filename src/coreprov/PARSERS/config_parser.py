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
Parser for the provisioning configuration YAML file.
"""
import logging
import os
from typing import Dict, Optional

import yaml
from pydantic import ValidationError

from ..errors import ConfigError
from ..MODELS.config import (
    Config,
    ContainerSpec,
    ImageBuildSpec,
    ImageSpec,
    UserAuth,
    UserSpec,
)
from ..UTILS.string_interpolation import EnvironmentInterpolator

logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "COREPROV_CONFIG"
DEFAULT_CONFIG_PATH = "config.yaml"


class ConfigParser:
    """
    Parser for coreprov configuration files.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with an optional environment context for interpolation.

        :param context: Variables available to ${VAR} placeholders, os.environ by default.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, config_path: str) -> Config:
        """
        Parses a configuration file from a path.

        :param config_path: Path to the configuration file.
        :return: Parsed configuration with names and defaults filled in.
        """
        try:
            with open(config_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise ConfigError(f"Unable to read config {config_path}: {e}") from e
        return self.parse_from_string(content)

    def parse_from_string(self, content: str) -> Config:
        """
        Parses a configuration from a string.

        :param content: YAML content.
        :return: Parsed configuration with names and defaults filled in.
        """
        missing = []
        content = EnvironmentInterpolator.interpolate(content, self.context, missing)
        for name in missing:
            logger.warning("Variable %s is not set, defaulting to a blank string", name)

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid config YAML: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError("Config must be a mapping of containers, users and images")

        # Empty sections and entries are written as nulls in YAML.
        for section in ("containers", "users", "images"):
            entries = data.get(section) or {}
            if not isinstance(entries, dict):
                raise ConfigError(f"Config section {section} must be a mapping")
            data[section] = {name: spec or {} for name, spec in entries.items()}

        try:
            config = Config.model_validate(data)
        except ValidationError as e:
            raise ConfigError(f"Invalid config: {e}") from e

        config.fill_private_fields()
        config.fill_defaults()
        return config

    @staticmethod
    def dump(config: Config) -> str:
        """
        Serializes a configuration back to YAML, leaving out default values.
        """
        data = config.model_dump(by_alias=True, exclude_defaults=True, mode="json")
        return yaml.safe_dump(data, default_flow_style=False, sort_keys=True)

    def write(self, config: Config, config_path: str) -> None:
        with open(config_path, 'w') as f:
            f.write(self.dump(config))


def default_config_path() -> str:
    return os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH


def default_config() -> Config:
    """
    Builds the stock configuration: one user entering one privileged container.
    """
    config = Config(
        users={
            "core": UserSpec(
                container="core",
                auth=UserAuth(copy_root_keys=True),
            ),
        },
        images={
            "coreprov/core:latest": ImageSpec(
                build=ImageBuildSpec(source="/opt/coreprov/coreenv/user"),
            ),
        },
        containers={
            "core": ContainerSpec(
                image="coreprov/core:latest",
                cmd=["/bin/sleep", "infinity"],
                privileged=True,
                cap_add=["ALL"],
                host_ipc=True,
                host_pid=True,
                host_uts=True,
                host_network=True,
                security_opt=["seccomp=unconfined"],
                mounts=[
                    "/lib/modules:/lib/modules",
                    "/sys/fs/cgroup:/sys/fs/cgroup:ro",
                    "/dev:/dev",
                    "/mnt:/mnt",
                ],
                tmp_fs={"/run": "rw,noexec,nosuid,size=65536k"},
            ),
        },
    )
    config.fill_private_fields()
    config.fill_defaults()
    return config
