"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Exceptions raised by the evidence container components

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

from typing import List, Optional


class SfsImageError(Exception):
    """Base class for all ptsfsimage failures."""


class UsageError(SfsImageError):
    """Malformed or missing command-line arguments."""


class ValidationError(SfsImageError):
    """A source, destination or container failed a precondition."""


class ResourceConflict(SfsImageError):
    """Sidecar directory or destination path is already present."""


class CleanupFailure(SfsImageError):
    """Working directory or mount point could not be removed."""


class ProcessFailure(SfsImageError):
    """An external tool exited non-zero."""

    def __init__(self, cmd: List[str], returncode: int, stderr: Optional[str] = None) -> None:
        self.cmd        = list(cmd)
        self.returncode = returncode
        self.stderr     = (stderr or "").strip()
        message = f"{' '.join(self.cmd)} exited with code {returncode}"
        if self.stderr:
            message += f": {self.stderr}"
        super().__init__(message)
