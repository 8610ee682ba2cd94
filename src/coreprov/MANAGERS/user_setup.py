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
Provisions host user accounts whose login shell enters a container.
"""
import logging
import os
import pwd
import shutil
import sys
import threading
from dataclasses import dataclass
from typing import Optional

import yaml

from ..errors import ConfigError, CoreprovError, UserSetupError
from ..MODELS.config import UserAuth, UserShellConfig, UserSpec, ensure_slash_prefix
from ..RUNNERS.exec_cmd import exec_cmd
from ..UTILS.random_password import random_password
from .job import ContainerWaiter, SetupJob

logger = logging.getLogger(__name__)

USER_CONFIG_FILE = ".coreprov.yaml"
USER_LOG_FILE = ".coreprov-setup.log"
ROOT_AUTHORIZED_KEYS = "/root/.ssh/authorized_keys"

# Concurrent edits of one container's user database are unsafe.
_container_user_lock = threading.Lock()


@dataclass
class HostUser:
    """A host account as seen by the password database."""
    name: str
    uid: int
    gid: int
    home: str


class HostAccounts:
    """
    Host account management through the standard system tools.
    """
    root_keys_path = ROOT_AUTHORIZED_KEYS

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def lookup(self, name: str) -> Optional[HostUser]:
        try:
            entry = pwd.getpwnam(name)
        except KeyError:
            return None
        return HostUser(name=entry.pw_name, uid=entry.pw_uid, gid=entry.pw_gid, home=entry.pw_dir)

    def create(self, name: str, shell: str) -> None:
        exec_cmd("adduser", "-G", "docker", "-D", "-s", shell, name)

    def set_shell(self, name: str, shell: str) -> None:
        exec_cmd("chsh", "-s", shell, name)

    def lock(self, name: str) -> None:
        exec_cmd("passwd", "-l", name)

    def clear_password(self, name: str) -> None:
        exec_cmd("passwd", "-d", name)

    def set_password(self, name: str, password: str) -> None:
        exec_cmd("passwd", name, stdin=f"{password}\n{password}\n")

    def chown(self, path: str, uid: int, gid: int) -> None:
        os.chown(path, uid, gid)


def default_shell_path() -> str:
    """Path of the running executable, used as the login shell of provisioned users."""
    return os.path.abspath(sys.argv[0])


class UserSetup(SetupJob):
    """
    Reconciles one host user bound to a container.
    """

    def __init__(self, spec: UserSpec, waiter: ContainerWaiter, create_users: bool = False,
                 accounts: Optional[HostAccounts] = None, shell_path: Optional[str] = None):
        """
        :param spec: The user to reconcile.
        :param waiter: Used to check for and wait on the user's container.
        :param create_users: Create the account when it does not exist.
        :param accounts: Host account backend.
        :param shell_path: Login shell given to the account.
        """
        super().__init__()
        self.spec = spec
        self.waiter = waiter
        self.create_users = create_users
        self.accounts = accounts or HostAccounts()
        self.shell_path = shell_path or default_shell_path()

    @property
    def name(self) -> str:
        return self.spec.name

    def _run(self) -> None:
        if not self.accounts.is_root():
            raise UserSetupError(f"Not running as root, cannot setup user {self.name}")
        if not self.spec.container:
            raise ConfigError(f"User {self.name} must have container specified.")

        container = ensure_slash_prefix(self.spec.container)
        if not self.waiter.check_has_container(container):
            raise ConfigError(f"User {self.name}: no such container: {container}")

        user = self._ensure_account()
        self._set_credentials()
        self._write_authorized_keys(user)

        log_path = os.path.join(user.home, USER_LOG_FILE)
        with open(log_path, "w", buffering=1) as log_file:
            self.accounts.chown(log_path, user.uid, user.gid)
            container_id, error = self.waiter.wait_for_container(container, log_file)
        if error is not None:
            raise error

        if self.spec.container_user and self.spec.create_container_user:
            with _container_user_lock:
                self._ensure_container_user(container_id)

        self._write_user_config(user, container_id)

    def _ensure_account(self) -> HostUser:
        user = self.accounts.lookup(self.name)
        if user is None:
            if not self.create_users:
                raise UserSetupError(f"User {self.name}: not found, and create-users is not enabled.")
            logger.debug("Creating user %s", self.name)
            self.accounts.create(self.name, self.shell_path)
            user = self.accounts.lookup(self.name)
            if user is None:
                raise UserSetupError(f"User {self.name} was not found after creating it")
        else:
            logger.debug("Setting shell of %s to %s", self.name, self.shell_path)
            self.accounts.set_shell(self.name, self.shell_path)
        return user

    def _set_credentials(self) -> None:
        auth = self.spec.auth or UserAuth()
        if auth.locked:
            logger.debug("Locking user %s", self.name)
            self.accounts.lock(self.name)
            return

        password = auth.password
        if not password and not auth.allow_empty_password:
            logger.debug("Setting password of %s to a long random value", self.name)
            password = random_password()

        if not password:
            logger.debug("Disabling password for user %s", self.name)
            try:
                self.accounts.clear_password(self.name)
            except CoreprovError as e:
                logger.warning("Error while unsetting password of %s: %s", self.name, e)
            return

        logger.debug("Setting password of %s", self.name)
        self.accounts.set_password(self.name, password.replace("\n", ""))

    def _write_authorized_keys(self, user: HostUser) -> None:
        logger.debug("Setting up SSH keys for %s", self.name)
        if not os.path.exists(user.home):
            os.makedirs(user.home, mode=0o755)
            self.accounts.chown(user.home, user.uid, user.gid)

        ssh_dir = os.path.join(user.home, ".ssh")
        os.makedirs(ssh_dir, mode=0o700, exist_ok=True)
        os.chmod(ssh_dir, 0o700)
        self.accounts.chown(ssh_dir, user.uid, user.gid)

        keys_path = os.path.join(ssh_dir, "authorized_keys")
        fd = os.open(keys_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            auth = self.spec.auth
            if auth is not None:
                if auth.copy_root_keys:
                    with open(self.accounts.root_keys_path, "r") as root_keys:
                        shutil.copyfileobj(root_keys, f)
                    f.write("\n")
                for key in auth.ssh_keys:
                    f.write(key + "\n")
        self.accounts.chown(keys_path, user.uid, user.gid)

    def _ensure_container_user(self, container_id: str) -> None:
        user = self.spec.container_user
        try:
            result = self.waiter.exec_cmd_container(container_id, "root", "id", user)
        except CoreprovError as e:
            logger.warning("Unable to check for container user %s: %s", user, e)
            return
        if result.exit_code == 0 or not result.stderr.strip().endswith("no such user"):
            return

        logger.debug("Creating container user %s in %s", user, container_id[:12])
        try:
            result = self.waiter.exec_cmd_container(container_id, "root", "useradd", user)
        except CoreprovError as e:
            logger.warning("Unable to create container user %s: %s", user, e)
            return
        if result.exit_code != 0:
            logger.warning("Unable to create container user %s: %s", user, result.stderr.strip())

    def _write_user_config(self, user: HostUser, container_id: str) -> None:
        path = os.path.join(user.home, USER_CONFIG_FILE)
        logger.debug("Writing user config %s", path)
        data = self.spec.to_user_shell(container_id).model_dump(by_alias=True)
        fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o640)
        with os.fdopen(fd, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)
        self.accounts.chown(path, user.uid, user.gid)


def read_user_config(path: str) -> UserShellConfig:
    """
    Loads a user descriptor written by UserSetup.

    This is the entry point for whatever reads ~/.coreprov.yaml at login to
    enter the user's container; the config keys are camelCase.
    """
    with open(path, "r") as f:
        return UserShellConfig.model_validate(yaml.safe_load(f) or {})
