"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Append-only growth of an existing container

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from .builder import ContainerBuilder
from .config import ConfigProfile
from .errors import ProcessFailure, UsageError
from .lister import entry_names
from .validator import require

logger = logging.getLogger("ptsfsimage.append")


def _same_file(a: str, b: str) -> bool:
    try:
        return os.path.samefile(a, b)
    except OSError:
        return os.path.abspath(a) == os.path.abspath(b)


class AppendOperation:
    """
    Adds files as new entries; entries already in the container are never
    rewritten. Note that the container file's own mtime still changes.

    mksquashfs silently drops a pseudo file whose name is already taken in
    the root directory, so names are checked against the current listing
    and a clashing file is skipped with a reason.
    """

    def __init__(self, profile: ConfigProfile, builder: Optional[ContainerBuilder] = None) -> None:
        self.profile = profile
        self.builder = builder or ContainerBuilder(profile)

    def run(self, args: List[str]) -> List[Dict[str, Any]]:
        if len(args) < 2:
            raise UsageError("append needs at least one file and a destination container")
        *files, destination = args
        require(destination)
        taken = entry_names(destination)

        results = []
        with tempfile.TemporaryDirectory(prefix=".sfsimage-append-") as workdir:
            for name in files:
                result = {"file": name, "container": destination, "added": False, "reason": None}
                results.append(result)
                entry = os.path.basename(name)
                if _same_file(name, destination):
                    result["reason"] = "refusing to append the container to itself"
                    continue
                if not os.path.isfile(name):
                    result["reason"] = f"{name} is not a regular file"
                    continue
                if entry in taken:
                    result["reason"] = f"an entry named {entry} already exists in {destination}"
                    continue
                try:
                    self.builder.add_entries(Path(destination), [Path(name)], Path(workdir))
                except ProcessFailure as exc:
                    logger.error(f"Append of {name} failed: {exc}")
                    result["reason"] = str(exc)
                    continue
                taken.add(entry)
                result["added"] = True
        return results
