"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Chain-of-custody record for one acquisition

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from ._version import __version__

LOG_ENTRY   = "sfsimagelog.txt"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger("ptsfsimage.custody")


def now() -> datetime:
    """Wall clock, second precision."""
    return datetime.now().replace(microsecond=0)


@dataclass
class AcquisitionRecord:
    started:        datetime
    invocation:     str
    cwd:            str
    source:         str
    destination:    str
    entry_name:     str
    command_line:   str
    hash_algorithm: str
    version:        str = f"ptsfsimage {__version__}"
    finished:       Optional[datetime] = None
    stream_digest:  Optional[str] = None
    hashlog:        str = ""
    errorlog:       str = ""
    sealed:         bool = field(default=False, repr=False)

    def seal(self, hashlog: str, errorlog: str, stream_digest: Optional[str],
             finished: Optional[datetime] = None) -> None:
        if self.sealed:
            raise ValueError("Acquisition record is already sealed")
        finished = finished or now()
        if finished < self.started:
            # wall clock stepped backwards during the acquisition
            logger.warning(f"Clock went backwards ({finished} < {self.started}), "
                           f"recording finish as start time")
            finished = self.started
        self.finished      = finished
        self.hashlog       = hashlog
        self.errorlog      = errorlog
        self.stream_digest = stream_digest
        self.sealed        = True


class CustodyLogger:
    """Renders an AcquisitionRecord as the plain-text sfsimagelog.txt entry."""

    def begin(self, invocation: str, cwd: str, source: str, destination: str,
              entry_name: str, command_line: str, hash_algorithm: str) -> AcquisitionRecord:
        record = AcquisitionRecord(started=now(), invocation=invocation, cwd=cwd,
                                   source=source, destination=destination,
                                   entry_name=entry_name, command_line=command_line,
                                   hash_algorithm=hash_algorithm)
        logger.info(f"Acquisition started {record.started.strftime(TIME_FORMAT)}: "
                    f"{source} -> {destination}")
        return record

    @staticmethod
    def render(record: AcquisitionRecord) -> str:
        if not record.sealed:
            raise ValueError("Cannot render an unsealed acquisition record")
        lines = [
            f"Started: {record.started.strftime(TIME_FORMAT)}",
            f"Sfsimage version: {record.version}",
            f"Sfsimage command: {record.invocation}",
            f"Current working directory: {record.cwd}",
            f"Forensic evidence source: {record.source}",
            f"Destination squashfs container: {record.destination}",
            f"Image filename inside container: {record.entry_name}",
            f"Acquisition command: {record.command_line}",
        ]
        if record.stream_digest:
            lines.append(f"Stream {record.hash_algorithm}: {record.stream_digest}")
        lines.append(f"Completed: {record.finished.strftime(TIME_FORMAT)}")
        text = "\n".join(lines) + "\n"
        if record.hashlog.strip():
            text += "\n--- hashlog.txt ---\n" + record.hashlog.rstrip("\n") + "\n"
        if record.errorlog.strip():
            text += "\n--- errorlog.txt ---\n" + record.errorlog.rstrip("\n") + "\n"
        return text

    def persist(self, record: AcquisitionRecord, path: Path) -> Path:
        path = Path(path)
        path.write_text(self.render(record), encoding="utf-8")
        logger.info(f"Custody log written to {path}")
        return path
