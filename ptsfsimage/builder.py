"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - SquashFS container builder (mksquashfs wrapper)

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import errno
import logging
import os
import shlex
import subprocess
import time
from contextlib import closing
from pathlib import Path
from typing import Iterable, Iterator, List, Set

from .config import ConfigProfile
from .errors import ProcessFailure, SfsImageError
from .runner import run_command

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

MKSQUASHFS     = "mksquashfs"
ANCHOR_NAME    = "anchor"
FIFO_NAME      = "image.fifo"
BUILD_LOG_NAME = "mksquashfs.log"
FIFO_POLL      = 0.05

logger = logging.getLogger("ptsfsimage.builder")


def pseudo_name(name: str) -> str:
    if any(c.isspace() or c == '"' for c in name):
        return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'
    return name


class ContainerBuilder:
    """
    Builds and extends SquashFS containers. Every regular entry is written as
    a pseudo file definition so its mode, owner and group always come from
    the profile, never from the file on disk.

    mksquashfs needs at least one real directory operand even when all
    content is pseudo, so an empty anchor directory is passed every time.
    """

    def __init__(self, profile: ConfigProfile) -> None:
        self.profile = profile
        self._sealed: Set[str] = set()

    # --- helpers ------------------------------------------------------------

    def pseudo_entry(self, name: str, command: str) -> str:
        """mksquashfs -p definition: <name> f <mode> <uid> <gid> <command>"""
        p = self.profile
        return f"{pseudo_name(name)} f {p.mode} {p.owner} {p.group} {command}"

    def _command(self, anchor: Path, container: Path, entries: List[str],
                 create: bool) -> List[str]:
        cmd = [MKSQUASHFS, str(anchor), str(container), "-no-progress",
               "-force-uid", self.profile.owner, "-force-gid", self.profile.group]
        if create:
            # compressor can only be chosen when the filesystem is first written
            cmd += ["-noappend", "-comp", self.profile.compression]
        for entry in entries:
            cmd += ["-p", entry]
        return cmd

    @staticmethod
    def _anchor(workdir: Path) -> Path:
        anchor = Path(workdir) / ANCHOR_NAME
        anchor.mkdir(parents=True, exist_ok=True)
        if any(anchor.iterdir()):
            raise SfsImageError(f"Anchor directory {anchor} is not empty")
        return anchor

    def _open_fifo(self, fifo: Path, proc: subprocess.Popen, cmd: List[str], build_log: Path) -> int:
        """Open the FIFO for writing once mksquashfs' reader is attached."""
        while True:
            try:
                fd = os.open(fifo, os.O_WRONLY | os.O_NONBLOCK)
            except OSError as exc:
                if exc.errno != errno.ENXIO:
                    raise
                if proc.poll() is not None:
                    raise ProcessFailure(cmd, proc.returncode, self._log_tail(build_log))
                time.sleep(FIFO_POLL)
                continue
            os.set_blocking(fd, True)
            return fd

    @staticmethod
    def _log_tail(build_log: Path, limit: int = 2000) -> str:
        try:
            return build_log.read_text(errors="replace")[-limit:]
        except OSError:
            return ""

    # --- build protocol -----------------------------------------------------

    def begin_with_streamed_entry(self, container: Path, entry_name: str,
                                  chunks: Iterator[bytes], workdir: Path) -> int:
        """
        Phase 1: create the container holding a single entry whose bytes
        come from chunks. mksquashfs reads the entry through a FIFO in the
        working directory, so the stream is written into the archive as it
        is produced. Returns the number of bytes streamed.
        """
        workdir   = Path(workdir)
        anchor    = self._anchor(workdir)
        fifo      = workdir / FIFO_NAME
        build_log = workdir / BUILD_LOG_NAME
        try:
            os.mkfifo(fifo, 0o600)
        except OSError as exc:
            raise SfsImageError(f"Cannot create FIFO {fifo}: {exc.strerror or exc}") from exc

        entry = self.pseudo_entry(entry_name, f"cat {shlex.quote(str(fifo))}")
        cmd   = self._command(anchor, Path(container), [entry], create=True)
        logger.debug(f"Executing: {shlex.join(cmd)}")

        written = 0
        with open(build_log, "wb") as log_fh:
            proc = subprocess.Popen(cmd, stdin=subprocess.DEVNULL,
                                    stdout=log_fh, stderr=subprocess.STDOUT)
            try:
                fd = self._open_fifo(fifo, proc, cmd, build_log)
                with os.fdopen(fd, "wb") as out, closing(chunks):
                    for chunk in chunks:
                        out.write(chunk)
                        written += len(chunk)
            except BrokenPipeError:
                proc.wait()
                raise ProcessFailure(cmd, proc.returncode, self._log_tail(build_log))
            except BaseException:
                # reader sees EOF once our end is closed; let it exit before re-raising
                if proc.poll() is None:
                    proc.terminate()
                proc.wait()
                raise
            returncode = proc.wait()

        if returncode != 0:
            raise ProcessFailure(cmd, returncode, self._log_tail(build_log))
        logger.info(f"Created {container} with streamed entry {entry_name} ({written} bytes)")
        return written

    def add_entries(self, container: Path, files: Iterable[Path], workdir: Path) -> List[str]:
        """
        Append regular files to an existing container using mksquashfs'
        native append mode. Existing entries are left untouched.
        Returns the entry names that were requested.
        """
        files = [Path(f) for f in files]
        names = [f.name for f in files]
        entries = [self.pseudo_entry(f.name, f"cat {shlex.quote(str(f.resolve()))}") for f in files]
        cmd = self._command(self._anchor(Path(workdir)), Path(container), entries, create=False)

        r = run_command(cmd)
        if not r["success"]:
            raise ProcessFailure(cmd, r["returncode"], r["stderr"] or r["stdout"][-2000:])
        logger.info(f"Appended {', '.join(names)} to {container}")
        return names

    def seal_with_additional_entries(self, container: Path, files: Iterable[Path],
                                     workdir: Path) -> List[str]:
        """Phase 2: add the custody and data mover logs. Runs once per container."""
        key = os.path.abspath(container)
        if key in self._sealed:
            raise SfsImageError(f"{container} has already been sealed")
        names = self.add_entries(container, files, workdir)
        self._sealed.add(key)
        return names
