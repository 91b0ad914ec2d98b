"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Evidence container authenticity checks

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import os
from typing import NamedTuple, Optional

from .config import CONTAINER_SUFFIX
from .errors import ValidationError

SQUASHFS_MAGIC = b"hsqs"


class Verdict(NamedTuple):
    ok:     bool
    reason: Optional[str] = None

    def __bool__(self) -> bool:
        return self.ok


def has_signature(path: str) -> bool:
    """True when the file starts with the SquashFS superblock magic."""
    try:
        with open(path, "rb") as fh:
            return fh.read(len(SQUASHFS_MAGIC)) == SQUASHFS_MAGIC
    except OSError:
        return False


def validate(path: str) -> Verdict:
    """
    Decide whether path is a genuine container. Read-only and repeatable.
    A failed verdict means "skip this item", never "abort the batch".
    """
    if not os.path.exists(path):
        return Verdict(False, f"{path} does not exist")
    if not path.endswith(CONTAINER_SUFFIX):
        return Verdict(False, f"{path} does not have a {CONTAINER_SUFFIX} suffix")
    if not os.path.isfile(path):
        return Verdict(False, f"{path} is not a regular file")
    if not has_signature(path):
        return Verdict(False, f"{path} is not a SquashFS container")
    return Verdict(True)


def require(path: str) -> None:
    """validate() for single-target callers: raises instead of returning."""
    verdict = validate(path)
    if not verdict:
        raise ValidationError(verdict.reason)
