"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Read-only container content listing (unsquashfs -lls)

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional, Set

from .errors import ProcessFailure
from .runner import run_command
from .validator import validate

UNSQUASHFS   = "unsquashfs"
ROOT_PREFIX  = "squashfs-root"
TIMEOUT_LIST = 300

# -r--r--r-- root/root  1048576 2024-01-15 10:32 squashfs-root/image.raw
ENTRY_RE = re.compile(
    r"^(?P<permissions>[-dlcbps][-rwxsStT]{9})\s+"
    r"(?P<owner>\S+)\s+"
    r"(?P<size>\d+(?:,\s*\d+)?)\s+"
    r"(?P<modified>\d{4}-\d{2}-\d{2} \d{2}:\d{2})\s+"
    r"(?P<path>.+)$"
)


@dataclass
class ArchiveEntry:
    permissions: str
    owner:       str
    size:        Optional[int]
    modified:    str
    path:        str
    line:        str

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("line")
        return data


def parse_listing(output: str) -> List[ArchiveEntry]:
    """Entry rows of an unsquashfs -lls listing; header and summary lines are dropped."""
    entries = []
    for line in output.splitlines():
        m = ENTRY_RE.match(line.rstrip())
        if not m:
            continue
        path = m.group("path")
        if path.startswith(ROOT_PREFIX):
            path = path[len(ROOT_PREFIX):]
        if path in ("", "/"):
            continue
        size = m.group("size")
        entries.append(ArchiveEntry(
            permissions=m.group("permissions"),
            owner=m.group("owner"),
            size=int(size) if size.isdigit() else None,
            modified=m.group("modified"),
            path=path,
            line=line.rstrip(),
        ))
    return entries


class ContentLister:
    """Validates each container and lists its entries; never modifies anything."""

    def list_one(self, container: str) -> Dict[str, Any]:
        result: Dict[str, Any] = {"container": container, "entries": [], "reason": None}
        verdict = validate(container)
        if not verdict:
            result["reason"] = verdict.reason
            return result

        r = run_command([UNSQUASHFS, "-lls", container], timeout=TIMEOUT_LIST)
        if not r["success"]:
            result["reason"] = f"unsquashfs failed: {r['stderr'] or r['returncode']}"
            return result
        result["entries"] = parse_listing(r["stdout"])
        return result

    def list(self, containers: List[str]) -> List[Dict[str, Any]]:
        return [self.list_one(c) for c in containers]


def entry_names(container: str) -> Set[str]:
    """Names of the entries in the container's root directory."""
    cmd = [UNSQUASHFS, "-lls", container]
    r = run_command(cmd, timeout=TIMEOUT_LIST)
    if not r["success"]:
        raise ProcessFailure(cmd, r["returncode"], r["stderr"])
    return {e.path.lstrip("/") for e in parse_listing(r["stdout"]) if e.path.count("/") == 1}
