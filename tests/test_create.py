"""
End-to-end tests for container creation.

dd is used as the data mover and the fake mksquashfs from conftest writes
the streamed entry and the sealed logs one after another into the
container, so everything that ends up inside can be inspected.
"""

import errno
import hashlib
import os
import tempfile
from pathlib import Path

import pytest

from ptsfsimage.config import ConfigProfile
from ptsfsimage.create import WORKDIR_PREFIX, CreateOperation, publish, remove_workdir
from ptsfsimage.errors import (CleanupFailure, ProcessFailure, ResourceConflict, SfsImageError,
                               ValidationError)
from ptsfsimage.validator import validate


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "disk.img"
    path.write_bytes(os.urandom(256 * 1024))
    return path


@pytest.fixture(autouse=True)
def scratch_root(tmp_path, monkeypatch):
    """Private temp root so leftover scratch directories can be seen."""
    root = tmp_path / "scratch"
    root.mkdir()
    monkeypatch.setattr(tempfile, "tempdir", str(root))
    return root


def _residue(directory):
    found = [p for p in Path(directory).iterdir() if p.name.startswith(WORKDIR_PREFIX)]
    scratch = Path(directory) / "scratch"
    if scratch.is_dir():
        found += list(scratch.iterdir())
    return found


class TestCreateOperation:

    def test_creates_valid_container_with_custody_log(self, tmp_path, source, profile,
                                                     fake_mksquashfs):
        dest = tmp_path / "case.sfs"
        op = CreateOperation(profile, show_progress=False, invocation="ptsfsimage -i disk.img case.sfs")

        result = op.run(str(source), str(dest))

        assert validate(str(dest)).ok
        data = dest.read_bytes()
        image = source.read_bytes()
        assert data[4:4 + len(image)] == image

        log = data[4 + len(image):].decode()
        assert f"Forensic evidence source: {source}" in log
        assert f"Destination squashfs container: {dest}" in log
        assert f"Acquisition command: dd if={source} status=none" in log
        assert f"Stream md5: {hashlib.md5(image).hexdigest()}" in log
        assert "Sfsimage command: ptsfsimage -i disk.img case.sfs" in log

        started = log.split("Started: ")[1].splitlines()[0]
        completed = log.split("Completed: ")[1].splitlines()[0]
        assert started <= completed

        assert result["entries"] == ["image.raw", "sfsimagelog.txt", "errorlog.txt", "hashlog.txt"]
        assert result["bytesAcquired"] == len(image)
        assert result["streamHash"] == hashlib.md5(image).hexdigest()
        assert _residue(tmp_path) == []

    def test_refuses_to_overwrite(self, tmp_path, source, profile, fake_mksquashfs):
        dest = tmp_path / "case.sfs"
        dest.write_bytes(b"hsqs original")
        with pytest.raises(ValidationError, match="already exists"):
            CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert dest.read_bytes() == b"hsqs original"

    def test_bad_source_has_no_side_effects(self, tmp_path, profile, fake_mksquashfs):
        with pytest.raises(ValidationError):
            CreateOperation(profile, show_progress=False).run(str(tmp_path / "nope.img"),
                                                              str(tmp_path / "case.sfs"))
        assert not (tmp_path / "case.sfs").exists()
        assert _residue(tmp_path) == []

    def test_data_mover_failure_leaves_nothing_behind(self, tmp_path, source, fake_mksquashfs):
        profile = ConfigProfile(data_mover="false {input}", privilege_command="")
        dest = tmp_path / "case.sfs"
        with pytest.raises(ProcessFailure):
            CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert not dest.exists()
        assert _residue(tmp_path) == []

    def test_builder_failure_leaves_nothing_behind(self, tmp_path, source, profile,
                                                   fake_mksquashfs, monkeypatch):
        monkeypatch.setenv("FAKE_MKSQUASHFS_FAIL", "1")
        dest = tmp_path / "case.sfs"
        with pytest.raises(ProcessFailure):
            CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert not dest.exists()
        assert _residue(tmp_path) == []

    def test_ownership_handed_to_sudo_user(self, tmp_path, source, profile, fake_mksquashfs,
                                           monkeypatch):
        chowned = []
        monkeypatch.setenv("SUDO_UID", "1234")
        monkeypatch.setenv("SUDO_GID", "5678")
        monkeypatch.setattr("ptsfsimage.create.os.chown", lambda p, u, g: chowned.append((p, u, g)))
        dest = tmp_path / "case.sfs"
        CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert chowned == [(str(dest), 1234, 5678)]

    def test_chown_failure_is_a_warning(self, tmp_path, source, profile, fake_mksquashfs,
                                        monkeypatch):
        monkeypatch.setenv("SUDO_UID", "1234")
        monkeypatch.setenv("SUDO_GID", "5678")

        def refuse(path, uid, gid):
            raise PermissionError(errno.EPERM, "Operation not permitted", path)

        monkeypatch.setattr("ptsfsimage.create.os.chown", refuse)
        dest = tmp_path / "case.sfs"
        result = CreateOperation(profile, show_progress=False).run(str(source), str(dest))

        assert validate(str(dest)).ok
        assert len(result["warnings"]) == 1
        assert "uid=1234" in result["warnings"][0]

    def test_fifo_is_created_outside_destination_directory(self, tmp_path, source, profile,
                                                           fake_mksquashfs, scratch_root,
                                                           monkeypatch):
        created = []
        real_mkfifo = os.mkfifo

        def spy(path, mode=0o666):
            created.append(Path(path))
            real_mkfifo(path, mode)

        monkeypatch.setattr("ptsfsimage.builder.os.mkfifo", spy)
        CreateOperation(profile, show_progress=False).run(str(source), str(tmp_path / "case.sfs"))

        assert created and created[0].parent.parent == scratch_root

    def test_filesystem_without_fifos(self, tmp_path, source, profile, fake_mksquashfs,
                                      monkeypatch):
        def unsupported(path, mode=0o666):
            raise PermissionError(errno.EPERM, "Operation not permitted", str(path))

        monkeypatch.setattr("ptsfsimage.builder.os.mkfifo", unsupported)
        dest = tmp_path / "case.sfs"
        with pytest.raises(SfsImageError, match="Cannot create FIFO"):
            CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert not dest.exists()
        assert _residue(tmp_path) == []

    def test_unwritable_destination_directory(self, tmp_path, source, profile, fake_mksquashfs,
                                              monkeypatch):
        real_mkdtemp = tempfile.mkdtemp

        def mkdtemp(prefix=None, dir=None):
            if dir is not None:
                raise PermissionError(errno.EACCES, "Permission denied", dir)
            return real_mkdtemp(prefix=prefix)

        monkeypatch.setattr("ptsfsimage.create.tempfile.mkdtemp", mkdtemp)
        dest = tmp_path / "case.sfs"
        with pytest.raises(ValidationError, match="Permission denied"):
            CreateOperation(profile, show_progress=False).run(str(source), str(dest))
        assert not dest.exists()
        assert _residue(tmp_path) == []

    def test_cleanup_failure_keeps_original_error(self, tmp_path, source, fake_mksquashfs,
                                                  monkeypatch):
        def stuck(workdir):
            raise CleanupFailure(f"Could not remove working directory {workdir}: busy")

        monkeypatch.setattr("ptsfsimage.create.remove_workdir", stuck)
        profile = ConfigProfile(data_mover="false {input}", privilege_command="")
        with pytest.raises(CleanupFailure) as info:
            CreateOperation(profile, show_progress=False).run(str(source),
                                                              str(tmp_path / "case.sfs"))

        assert "busy" in str(info.value)
        assert "exited with code 1" in str(info.value)
        assert isinstance(info.value.__cause__, ProcessFailure)


class TestPublish:

    def test_publish_links_into_place(self, tmp_path):
        staged = tmp_path / "staged.sfs"
        staged.write_bytes(b"hsqs")
        publish(staged, str(tmp_path / "case.sfs"))
        assert (tmp_path / "case.sfs").read_bytes() == b"hsqs"

    def test_publish_never_overwrites(self, tmp_path):
        staged = tmp_path / "staged.sfs"
        staged.write_bytes(b"hsqs new")
        dest = tmp_path / "case.sfs"
        dest.write_bytes(b"hsqs old")
        with pytest.raises(ResourceConflict):
            publish(staged, str(dest))
        assert dest.read_bytes() == b"hsqs old"


class TestRemoveWorkdir:

    def test_missing_directory_is_fine(self, tmp_path):
        remove_workdir(tmp_path / "never-created")

    def test_failure_is_fatal(self, tmp_path, monkeypatch):
        workdir = tmp_path / "work"
        workdir.mkdir()

        def boom(path):
            raise PermissionError(13, "Permission denied", str(path))

        monkeypatch.setattr("ptsfsimage.create.shutil.rmtree", boom)
        with pytest.raises(CleanupFailure, match="Permission denied"):
            remove_workdir(workdir)
