"""Tests for upload archives."""

import tarfile

import pytest

from stackup.tar import new_tar_stream, remote_tar_command, resolve_local_path


def names(stream) -> set[str]:
    with tarfile.open(fileobj=stream, mode="r:gz") as archive:
        return set(archive.getnames())


class TestResolveLocalPath:
    def test_expands_env_first(self, project, monkeypatch):
        monkeypatch.setenv("TARGET", "other")
        path = resolve_local_path(project, "$TARGET", {"TARGET": "dist"})
        assert str(path) == "dist"

    def test_falls_back_to_process_env(self, project, monkeypatch):
        monkeypatch.setenv("TARGET", "dist")
        assert str(resolve_local_path(project, "${TARGET}/static", {})) == "dist/static"

    def test_missing_path(self, project):
        with pytest.raises(FileNotFoundError, match="missing"):
            resolve_local_path(project, "missing", {})

    def test_absolute_path(self, project):
        path = resolve_local_path("/", str(project / "dist"), {})
        assert path == project / "dist"


class TestNewTarStream:
    def test_archives_tree(self, project):
        stream = new_tar_stream(project, "dist")
        assert {"dist", "dist/app.py", "dist/static/site.css", "dist/.git/HEAD"} <= names(stream)

    def test_normalizes_relative_names(self, project):
        assert "dist/app.py" in names(new_tar_stream(project, "./dist"))

    def test_excludes(self, project):
        archived = names(new_tar_stream(project, "dist", ["*.pyc", ".git", "static/"]))
        assert archived == {"dist", "dist/app.py"}

    def test_absolute_path_under_cwd(self, project):
        assert "dist/app.py" in names(new_tar_stream(project, project / "dist"))

    def test_single_file(self, project):
        assert names(new_tar_stream(project, "dist/app.py")) == {"dist/app.py"}

    def test_stream_is_rewound(self, project):
        stream = new_tar_stream(project, "dist")
        assert stream.tell() == 0
        assert stream.read(2) == b"\x1f\x8b"


class TestRemoteTarCommand:
    def test_plain(self):
        assert remote_tar_command("/srv/app") == "tar -C /srv/app -xzf -"

    def test_quotes_destination(self):
        assert remote_tar_command("/srv/my app") == "tar -C '/srv/my app' -xzf -"
