"""
Tests for container validation.

validate() must be read-only and repeatable, and must report a reason
instead of raising so batch callers can skip and continue.
"""

import os

import pytest

from ptsfsimage.errors import ValidationError
from ptsfsimage.validator import has_signature, require, validate


class TestValidate:

    def test_genuine_container_passes(self, make_container):
        verdict = validate(make_container())
        assert verdict.ok
        assert verdict.reason is None
        assert bool(verdict) is True

    def test_missing_path(self, tmp_path):
        verdict = validate(str(tmp_path / "nope.sfs"))
        assert not verdict
        assert "does not exist" in verdict.reason

    def test_wrong_suffix(self, tmp_path):
        path = tmp_path / "evidence.img"
        path.write_bytes(b"hsqs" + b"\x00" * 10)
        verdict = validate(str(path))
        assert not verdict
        assert ".sfs" in verdict.reason

    def test_wrong_signature(self, tmp_path):
        path = tmp_path / "fake.sfs"
        path.write_bytes(b"PK\x03\x04 not a squashfs")
        verdict = validate(str(path))
        assert not verdict
        assert "not a SquashFS" in verdict.reason

    def test_directory_with_suffix(self, tmp_path):
        path = tmp_path / "dir.sfs"
        path.mkdir()
        assert not validate(str(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.sfs"
        path.write_bytes(b"")
        assert not has_signature(str(path))
        assert not validate(str(path))

    def test_is_repeatable_and_side_effect_free(self, make_container):
        path = make_container()
        before = os.stat(path)
        content = open(path, "rb").read()

        first, second = validate(path), validate(path)

        assert first == second
        after = os.stat(path)
        assert after.st_mtime_ns == before.st_mtime_ns
        assert after.st_size == before.st_size
        assert open(path, "rb").read() == content


class TestRequire:

    def test_require_accepts_valid(self, make_container):
        require(make_container())

    def test_require_raises_with_reason(self, tmp_path):
        with pytest.raises(ValidationError, match="does not exist"):
            require(str(tmp_path / "missing.sfs"))
