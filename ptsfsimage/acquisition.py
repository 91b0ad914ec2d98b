"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Acquisition pipeline: source -> data mover -> hash tap -> archive entry

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import hashlib
import logging
import os
import shlex
import stat
import subprocess
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, TextIO

from .config import CONTAINER_SUFFIX, ConfigProfile
from .errors import ProcessFailure, ValidationError
from .runner import run_command

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

SOURCE_STDIN      = "-"
CHUNK_SIZE        = 1024 * 1024
PROGRESS_INTERVAL = 1.0
TIMEOUT_SIZE      = 30
HASHLOG_NAME      = "hashlog.txt"
ERRORLOG_NAME     = "errorlog.txt"
STDERR_NAME       = "datamover.stderr"

logger = logging.getLogger("ptsfsimage.acquisition")


@dataclass(frozen=True)
class SourceDescriptor:
    identifier: str            # exactly as given by the operator
    kind:       str            # "stdin" | "file" | "device"
    size:       Optional[int]  # None when unknown (stdin)

    @property
    def needs_privilege(self) -> bool:
        return self.kind == "device"

    @property
    def path(self) -> Optional[str]:
        return None if self.kind == "stdin" else self.identifier


def check_destination(destination: str) -> None:
    if not destination.endswith(CONTAINER_SUFFIX):
        raise ValidationError(f"Destination {destination} must end with {CONTAINER_SUFFIX}")
    if os.path.lexists(destination):
        raise ValidationError(f"Destination {destination} already exists")
    parent = os.path.dirname(os.path.abspath(destination))
    if not os.path.isdir(parent):
        raise ValidationError(f"Destination directory {parent} does not exist")


def device_size(device: str, profile: ConfigProfile) -> int:
    """Size of a block device as reported by a privileged blockdev query."""
    r = run_command(profile.privileged(["blockdev", "--getsize64", device]), timeout=TIMEOUT_SIZE)
    if not r["success"] or not r["stdout"].isdigit():
        raise ValidationError(f"Cannot query size of {device}: "
                              f"{r['stderr'] or 'unexpected blockdev output'}")
    return int(r["stdout"])


def resolve_source(source: str, profile: ConfigProfile) -> SourceDescriptor:
    """Classify the source and discover its size; no side effects on failure."""
    if source == SOURCE_STDIN:
        return SourceDescriptor(source, "stdin", None)

    try:
        st = os.stat(source)
    except OSError as exc:
        raise ValidationError(f"Source {source} is not accessible: {exc.strerror}") from exc

    if stat.S_ISREG(st.st_mode):
        if not os.access(source, os.R_OK):
            raise ValidationError(f"Source {source} is not readable")
        return SourceDescriptor(source, "file", st.st_size)
    if stat.S_ISBLK(st.st_mode):
        return SourceDescriptor(source, "device", device_size(source, profile))

    raise ValidationError(f"Source {source} is not a regular file, block device or '-'")


def _human(num: float) -> str:
    for unit in ("B", "KiB", "MiB", "GiB"):
        if num < 1024:
            return f"{num:.1f} {unit}"
        num /= 1024
    return f"{num:.1f} TiB"


class ProgressReporter:
    """Bytes-transferred / total line, rewritten in place on a terminal stream."""

    def __init__(self, total: Optional[int], stream: Optional[TextIO] = None,
                 interval: float = PROGRESS_INTERVAL, enabled: bool = True) -> None:
        self.total       = total
        self.stream      = stream or sys.stderr
        self.interval    = interval
        self.enabled     = enabled
        self.transferred = 0
        self._t0         = time.monotonic()
        self._last       = 0.0

    def format(self) -> str:
        elapsed = max(time.monotonic() - self._t0, 1e-6)
        rate    = f"{_human(self.transferred / elapsed)}/s"
        if self.total:
            percent = min(100.0, self.transferred * 100.0 / self.total)
            return f"{_human(self.transferred)} / {_human(self.total)} ({percent:.1f}%) {rate}"
        return f"{_human(self.transferred)} {rate}"

    def update(self, count: int) -> None:
        self.transferred += count
        now = time.monotonic()
        if self.enabled and now - self._last >= self.interval:
            self._last = now
            print(f"\r{self.format()}", end="", file=self.stream, flush=True)

    def finish(self) -> None:
        if self.enabled:
            print(f"\r{self.format()}", file=self.stream, flush=True)


class AcquisitionPipeline:
    """
    Runs the data mover against the source and exposes its standard output
    as a chunk generator. Every chunk passes through an in-process hash tap
    and the progress reporter before it is handed to the archive builder.
    The raw image never touches the filesystem on its own.
    """

    def __init__(self, source: SourceDescriptor, workdir: Path, profile: ConfigProfile,
                 progress: Optional[ProgressReporter] = None) -> None:
        self.source   = source
        self.workdir  = Path(workdir)
        self.profile  = profile
        self.hashlog  = self.workdir / HASHLOG_NAME
        self.errorlog = self.workdir / ERRORLOG_NAME
        self.progress = progress or ProgressReporter(source.size, enabled=False)

        cmd = profile.data_mover_command(source.path, str(self.hashlog), str(self.errorlog))
        self.command = profile.privileged(cmd) if source.needs_privilege else cmd

        self.digest:            Optional[str] = None
        self.bytes_transferred: int           = 0

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)

    def _stderr_tail(self, limit: int = 2000) -> str:
        try:
            return (self.workdir / STDERR_NAME).read_text(errors="replace")[-limit:]
        except OSError:
            return ""

    def stream(self) -> Iterator[bytes]:
        """
        Yield the acquired bytes. Raises ProcessFailure after the last chunk
        when the data mover exits non-zero; closing the generator early
        kills the data mover.
        """
        hasher = hashlib.new(self.profile.hash_algorithm)
        logger.info(f"Starting data mover: {self.command_line}")

        with open(self.workdir / STDERR_NAME, "wb") as stderr_fh:
            proc = subprocess.Popen(
                self.command,
                stdin=None if self.source.kind == "stdin" else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=stderr_fh,
            )
            completed = False
            try:
                for chunk in iter(lambda: proc.stdout.read(CHUNK_SIZE), b""):
                    hasher.update(chunk)
                    self.bytes_transferred += len(chunk)
                    self.progress.update(len(chunk))
                    yield chunk
                completed = True
            finally:
                if not completed and proc.poll() is None:
                    logger.warning("Acquisition interrupted, terminating data mover")
                    proc.kill()
                proc.stdout.close()
                returncode = proc.wait()

        self.progress.finish()
        if returncode != 0:
            raise ProcessFailure(self.command, returncode, self._stderr_tail())

        # downstream expects both logs even from a data mover that writes none
        for log in (self.hashlog, self.errorlog):
            if not log.exists():
                log.touch()
        self.digest = hasher.hexdigest()
        logger.info(f"Acquired {self.bytes_transferred} bytes, "
                    f"{self.profile.hash_algorithm} {self.digest}")
