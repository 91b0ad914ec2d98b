import os
import stat

import pytest

from ptsfsimage.config import ConfigProfile

# Stand-in for mksquashfs: "hsqs" header on create, then the output of every
# -p pseudo command appended in order. Enough to follow bytes end to end.
FAKE_MKSQUASHFS = """#!/bin/sh
if [ -n "$FAKE_MKSQUASHFS_FAIL" ]; then
    echo "mksquashfs: simulated failure" >&2
    exit 3
fi
dest="$2"
shift 2
case " $* " in
    *" -noappend "*) printf 'hsqs' > "$dest" ;;
    *) [ -f "$dest" ] || exit 1 ;;
esac
while [ $# -gt 0 ]; do
    if [ "$1" = "-p" ]; then
        shift
        cmd=$(printf '%s\\n' "$1" | cut -d' ' -f6-)
        sh -c "$cmd" >> "$dest" || exit 2
    fi
    shift
done
exit 0
"""


@pytest.fixture
def profile():
    return ConfigProfile(data_mover="dd {input} status=none", privilege_command="")


@pytest.fixture
def make_container(tmp_path):
    def _make(name="evidence.sfs", payload=b"\x00" * 92):
        path = tmp_path / name
        path.write_bytes(b"hsqs" + payload)
        return str(path)
    return _make


@pytest.fixture
def fake_mksquashfs(tmp_path, monkeypatch):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    script = bindir / "mksquashfs"
    script.write_text(FAKE_MKSQUASHFS)
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    monkeypatch.setenv("PATH", f"{bindir}{os.pathsep}{os.environ.get('PATH', '')}")
    monkeypatch.delenv("FAKE_MKSQUASHFS_FAIL", raising=False)
    monkeypatch.delenv("SUDO_UID", raising=False)
    monkeypatch.delenv("SUDO_GID", raising=False)
    return script


@pytest.fixture
def ok_result():
    def _result(stdout="", success=True, returncode=0, stderr=""):
        return {"success": success, "stdout": stdout, "stderr": stderr,
                "returncode": returncode, "duration": 0.0}
    return _result
