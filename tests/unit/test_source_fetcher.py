"""
Unit tests for fetching build sources.
"""
import io
import os
import stat
import tarfile

import pytest

from coreprov.BUILDERS.source_fetcher import SourceFetcher, SourceKind, classify_source
from coreprov.errors import ConfigError, PathTraversalError, SourceFetchError


def make_tarball(path, entries):
    """Writes a .tar.gz with (name, content) file entries or prebuilt TarInfo members."""
    with tarfile.open(path, "w:gz") as tar:
        for entry in entries:
            if isinstance(entry, tarfile.TarInfo):
                tar.addfile(entry)
                continue
            name, content = entry
            data = content.encode()
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o755 if name.endswith(".sh") else 0o644
            tar.addfile(info, io.BytesIO(data))
    return str(path)


class TestClassify:

    @pytest.mark.parametrize("source, kind", [
        ("git://github.com/example/repo", SourceKind.GIT),
        ("https://github.com/example/repo.git", SourceKind.GIT),
        ("http://example.com/src.tar.gz", SourceKind.TARBALL),
        ("/opt/sources/src.tar.gz", SourceKind.TARBALL),
        ("/opt/coreprov/coreenv/user", SourceKind.PATH),
    ])
    def test_kinds(self, source, kind):
        assert classify_source(source) == kind

    def test_empty_source(self):
        with pytest.raises(ConfigError):
            classify_source("")

    @pytest.mark.parametrize("source", ["relative/dir", "ftp://example.com/src.zip", "https://example.com/repo"])
    def test_unrecognized_source_names_it(self, source):
        with pytest.raises(ConfigError, match=source):
            classify_source(source)


class TestTarball:

    def test_extracts_files_with_modes(self, tmp_path):
        archive = make_tarball(tmp_path / "src.tar.gz", [
            ("Dockerfile", "FROM alpine\n"),
            ("scripts/entry.sh", "#!/bin/sh\n"),
        ])
        dest = tmp_path / "dest"
        dest.mkdir()

        SourceFetcher().fetch(str(dest), archive)

        assert (dest / "Dockerfile").read_text() == "FROM alpine\n"
        assert stat.S_IMODE(os.stat(dest / "scripts" / "entry.sh").st_mode) == 0o755

    def test_rejects_parent_traversal(self, tmp_path):
        archive = make_tarball(tmp_path / "evil.tar.gz", [("../../etc/passwd", "root::0:0::/:/bin/sh\n")])
        dest = tmp_path / "a" / "b" / "dest"
        dest.mkdir(parents=True)

        with pytest.raises(PathTraversalError):
            SourceFetcher().fetch(str(dest), archive)

        assert not (tmp_path / "a" / "etc").exists()
        assert not (tmp_path / "etc").exists()
        assert os.listdir(dest) == []

    def test_rejects_escaping_symlink(self, tmp_path):
        link = tarfile.TarInfo("escape")
        link.type = tarfile.SYMTYPE
        link.linkname = "/etc"
        archive = make_tarball(tmp_path / "link.tar.gz", [link])
        dest = tmp_path / "dest"
        dest.mkdir()

        with pytest.raises(PathTraversalError):
            SourceFetcher().fetch(str(dest), archive)
        assert not os.path.lexists(dest / "escape")

    def test_traversal_is_a_fetch_error(self):
        assert issubclass(PathTraversalError, SourceFetchError)

    def test_fetches_urls_through_opener(self, tmp_path):
        archive = make_tarball(tmp_path / "src.tar.gz", [("Dockerfile", "FROM debian\n")])
        opened = []

        def opener(url, timeout=None):
            opened.append(url)
            return open(archive, "rb")

        dest = tmp_path / "dest"
        dest.mkdir()
        SourceFetcher(opener=opener).fetch(str(dest), "https://example.com/src.tar.gz")

        assert opened == ["https://example.com/src.tar.gz"]
        assert (dest / "Dockerfile").read_text() == "FROM debian\n"

    def test_corrupt_archive(self, tmp_path):
        bad = tmp_path / "bad.tar.gz"
        bad.write_bytes(b"not a tarball")
        with pytest.raises(SourceFetchError):
            SourceFetcher().fetch(str(tmp_path), str(bad))


class TestPath:

    def test_copies_tree_with_modes_and_symlinks(self, tmp_path):
        src = tmp_path / "src"
        (src / "sub").mkdir(parents=True)
        (src / "Dockerfile").write_text("FROM alpine\n")
        script = src / "sub" / "run.sh"
        script.write_text("#!/bin/sh\n")
        script.chmod(0o750)
        os.symlink("sub/run.sh", src / "run")
        dest = tmp_path / "dest"
        dest.mkdir()

        SourceFetcher().fetch(str(dest), str(src))

        assert (dest / "Dockerfile").read_text() == "FROM alpine\n"
        assert stat.S_IMODE(os.stat(dest / "sub" / "run.sh").st_mode) == 0o750
        assert os.readlink(dest / "run") == "sub/run.sh"

    def test_source_must_be_directory(self, tmp_path):
        file_source = tmp_path / "file"
        file_source.write_text("x")
        with pytest.raises(SourceFetchError):
            SourceFetcher().fetch(str(tmp_path / "dest"), str(file_source))


class TestGit:

    def test_clones_with_submodules(self, tmp_path):
        calls = []
        fetcher = SourceFetcher(git=lambda *args: calls.append(args))
        fetcher.fetch(str(tmp_path), "https://github.com/example/repo.git")
        assert calls == [("clone", "--recurse-submodules", "https://github.com/example/repo.git", str(tmp_path))]
