import io
import os
import tarfile

import pytest

from coreprov.BUILDERS.source_fetcher import SourceFetcher
from coreprov.errors import ConfigError, PathTraversalError
from coreprov.MODELS.config import confine_path
from coreprov.PARSERS.config_parser import ConfigParser
from coreprov.RUNNERS.exec_cmd import exec_cmd


def test_command_injection_attempt(tmp_path):
    """
    Arguments are passed to the program as-is, never through a shell.
    """
    injected_file = tmp_path / "injected.txt"

    result = exec_cmd("echo", "hello", ";", "touch", str(injected_file), capture=True)

    assert result.stdout == f"hello ; touch {injected_file}\n"
    assert not injected_file.exists(), "Command injection successful! Security vulnerability found."


def test_password_is_not_interpreted(tmp_path):
    """
    Text fed on stdin stays data even when it looks like shell syntax.
    """
    marker = tmp_path / "marker"
    password = f"$(touch {marker})"
    result = exec_cmd("cat", stdin=f"{password}\n{password}\n", capture=True)

    assert result.stdout == f"{password}\n{password}\n"
    assert not marker.exists()


@pytest.mark.parametrize("name", [
    "../escape.txt",
    "sub/../../escape.txt",
    "/tmp/absolute.txt",
])
def test_tarball_path_traversal(tmp_path, name):
    archive = tmp_path / "evil.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        data = b"pwned\n"
        info = tarfile.TarInfo(name)
        info.size = len(data)
        tar.addfile(info, io.BytesIO(data))
    dest = tmp_path / "dest"
    dest.mkdir()

    with pytest.raises(PathTraversalError):
        SourceFetcher().fetch(str(dest), str(archive))

    assert not (tmp_path / "escape.txt").exists()
    assert os.listdir(dest) == []


def test_tarball_hardlink_escape(tmp_path):
    archive = tmp_path / "link.tar.gz"
    with tarfile.open(archive, "w:gz") as tar:
        link = tarfile.TarInfo("passwd")
        link.type = tarfile.LNKTYPE
        link.linkname = "../../etc/passwd"
        tar.addfile(link)
    dest = tmp_path / "dest"
    dest.mkdir()

    with pytest.raises(PathTraversalError):
        SourceFetcher().fetch(str(dest), str(archive))
    assert not os.path.lexists(dest / "passwd")


@pytest.mark.parametrize("value, expected", [
    ("../../etc", "./etc"),
    ("/etc/shadow", "./etc/shadow"),
    ("sub/../../../x", "./x"),
    ("docker/Dockerfile", "./docker/Dockerfile"),
])
def test_build_paths_stay_in_source(value, expected):
    assert confine_path(value) == expected


def test_relative_source_is_rejected():
    with pytest.raises(ConfigError):
        SourceFetcher().fetch("/nonexistent-dest", "../../etc")


def test_config_uses_safe_yaml():
    with pytest.raises(ConfigError):
        ConfigParser({}).parse_from_string("images: !!python/object/apply:os.system ['true']\n")
