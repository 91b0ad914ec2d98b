"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Container creation: acquisition + two-phase build + custody log

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import errno
import logging
import os
import shlex
import shutil
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .acquisition import (AcquisitionPipeline, ProgressReporter, SourceDescriptor,
                          check_destination, resolve_source)
from .builder import ContainerBuilder
from .config import IMAGE_ENTRY, ConfigProfile, invoking_user
from .custody import LOG_ENTRY, CustodyLogger
from .errors import CleanupFailure, ResourceConflict, SfsImageError, ValidationError

WORKDIR_PREFIX = ".sfsimage-"

logger = logging.getLogger("ptsfsimage.create")


def remove_workdir(workdir: Path) -> None:
    """Staging material must never be left behind; failure to remove it is fatal."""
    try:
        shutil.rmtree(workdir)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise CleanupFailure(f"Could not remove working directory {workdir}: {exc}") from exc
    logger.debug(f"Removed working directory {workdir}")


def publish(staged: Path, destination: str) -> None:
    """Expose the finished container under its final name without overwriting anything."""
    try:
        os.link(staged, destination)
        return
    except FileExistsError as exc:
        raise ResourceConflict(f"Destination {destination} appeared during acquisition") from exc
    except OSError as exc:
        if exc.errno not in (errno.EPERM, errno.EXDEV, errno.ENOTSUP, errno.EOPNOTSUPP):
            raise
    # no hard links on this filesystem: reserve the name exclusively, then replace it
    try:
        fd = os.open(destination, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
    except FileExistsError as exc:
        raise ResourceConflict(f"Destination {destination} appeared during acquisition") from exc
    os.close(fd)
    os.replace(staged, destination)


class CreateOperation:
    """
    Single-target, fail-fast creation of an evidence container.

    The FIFO, the anchor directory and the data mover logs live in a private
    scratch directory under the system temp dir. Only the staged container is
    kept next to the destination, and it is linked into place after both build
    phases succeed, so an aborted run never leaves a file at the destination.
    """

    def __init__(self, profile: ConfigProfile, builder: Optional[ContainerBuilder] = None,
                 custody: Optional[CustodyLogger] = None, show_progress: bool = True,
                 invocation: Optional[str] = None) -> None:
        self.profile       = profile
        self.builder       = builder or ContainerBuilder(profile)
        self.custody       = custody or CustodyLogger()
        self.show_progress = show_progress
        self.invocation    = invocation or shlex.join(sys.argv)

    def run(self, source: str, destination: str) -> Dict[str, Any]:
        check_destination(destination)
        descriptor = resolve_source(source, self.profile)
        dest_path  = os.path.abspath(destination)
        dest_dir   = os.path.dirname(dest_path)

        try:
            scratch = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX))
        except OSError as exc:
            raise ValidationError(f"Cannot create scratch directory: {exc}") from exc
        dirs = [scratch]
        try:
            try:
                staging = Path(tempfile.mkdtemp(prefix=WORKDIR_PREFIX, dir=dest_dir))
            except OSError as exc:
                raise ValidationError(f"Cannot write to destination directory {dest_dir}: "
                                      f"{exc.strerror or exc}") from exc
            dirs.append(staging)
            logger.debug(f"Scratch directory {scratch}, staging directory {staging}")
            try:
                result = self._acquire(descriptor, destination, dest_path, scratch, staging)
            except OSError as exc:
                raise SfsImageError(f"Acquisition aborted: {exc}") from exc
        except BaseException as exc:
            self._discard(dirs, cause=exc)
            raise
        self._discard(dirs)

        owner = invoking_user()
        if owner:
            try:
                os.chown(dest_path, *owner)
                logger.info(f"Ownership of {dest_path} handed to uid={owner[0]} gid={owner[1]}")
            except OSError as exc:
                message = f"Could not hand {dest_path} to uid={owner[0]} gid={owner[1]}: {exc.strerror or exc}"
                logger.warning(message)
                result["warnings"].append(message)
        return result

    @staticmethod
    def _discard(dirs: List[Path], cause: Optional[BaseException] = None) -> None:
        """Remove every working directory; a failure here never hides the original error."""
        failures = []
        for d in dirs:
            try:
                remove_workdir(d)
            except CleanupFailure as exc:
                failures.append(str(exc))
        if not failures:
            return
        message = "; ".join(failures)
        if cause is None:
            raise CleanupFailure(message)
        logger.error(f"Acquisition failed: {cause}")
        raise CleanupFailure(f"{message} (after failed acquisition: {cause})") from cause

    def _acquire(self, source: SourceDescriptor, destination: str, dest_path: str,
                 scratch: Path, staging: Path) -> Dict[str, Any]:
        progress = ProgressReporter(source.size, enabled=self.show_progress)
        pipeline = AcquisitionPipeline(source, scratch, self.profile, progress)
        record   = self.custody.begin(
            invocation=self.invocation, cwd=os.getcwd(), source=source.identifier,
            destination=destination, entry_name=IMAGE_ENTRY,
            command_line=pipeline.command_line, hash_algorithm=self.profile.hash_algorithm,
        )

        staged = staging / os.path.basename(dest_path)
        self.builder.begin_with_streamed_entry(staged, IMAGE_ENTRY, pipeline.stream(), scratch)

        record.seal(
            hashlog=pipeline.hashlog.read_text(errors="replace"),
            errorlog=pipeline.errorlog.read_text(errors="replace"),
            stream_digest=pipeline.digest,
        )
        log_path = self.custody.persist(record, scratch / LOG_ENTRY)

        entries: List[Path] = [log_path, pipeline.errorlog, pipeline.hashlog]
        self.builder.seal_with_additional_entries(staged, entries, scratch)
        publish(staged, dest_path)
        logger.info(f"Container {dest_path} finalised")

        return {
            "container":        dest_path,
            "source":           source.identifier,
            "sourceKind":       source.kind,
            "sourceSizeBytes":  source.size,
            "bytesAcquired":    pipeline.bytes_transferred,
            "hashAlgorithm":    self.profile.hash_algorithm,
            "streamHash":       pipeline.digest,
            "command":          pipeline.command_line,
            "started":          record.started.isoformat(),
            "completed":        record.finished.isoformat(),
            "entries":          [IMAGE_ENTRY] + [p.name for p in entries],
            "warnings":         [],
        }
