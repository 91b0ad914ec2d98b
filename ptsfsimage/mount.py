"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Sidecar mount point lifecycle

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import errno
import logging
import os
import re
from enum import Enum
from typing import Any, Dict, List

from .config import CONTAINER_SUFFIX, FS_TYPE, SIDECAR_SUFFIX, ConfigProfile
from .runner import run_command
from .validator import validate

MOUNT_TABLE   = "/proc/self/mounts"
MOUNT_OPTIONS = "loop,ro"
TIMEOUT_MOUNT = 60

logger = logging.getLogger("ptsfsimage.mount")

_ESCAPE = re.compile(r"\\([0-7]{3})")


class MountState(str, Enum):
    ABSENT    = "absent"
    CREATED   = "created"
    MOUNTED   = "mounted"
    FAILED    = "failed"
    UNMOUNTED = "unmounted"


def sidecar_path(container: str) -> str:
    return container + SIDECAR_SUFFIX


def _unescape(field: str) -> str:
    # the kernel octal-escapes blanks, tabs, newlines and backslashes
    return _ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), field)


class MountManager:
    """
    Mounts containers read-only on <container>.d. The sidecar directory is
    both the mount target and the lock: it is created with an exclusive
    mkdir, so a second mount of the same container fails fast instead of
    racing the first one.
    """

    def __init__(self, profile: ConfigProfile, mount_table: str = MOUNT_TABLE) -> None:
        self.profile     = profile
        self.mount_table = mount_table

    def list_mounted(self) -> List[Dict[str, str]]:
        """Active squashfs mounts whose mount point carries the sidecar suffix."""
        mounts = []
        with open(self.mount_table, encoding="utf-8", errors="replace") as fh:
            for line in fh:
                fields = line.split()
                if len(fields) < 4:
                    continue
                device, mountpoint, fstype, options = (_unescape(f) for f in fields[:4])
                if fstype == FS_TYPE and mountpoint.endswith(CONTAINER_SUFFIX + SIDECAR_SUFFIX):
                    mounts.append({"device": device, "mountpoint": mountpoint,
                                   "options": options})
        return mounts

    def mount_one(self, container: str) -> Dict[str, Any]:
        result = {"target": container, "mountpoint": sidecar_path(container),
                  "state": MountState.ABSENT.value, "reason": None}

        verdict = validate(container)
        if not verdict:
            result["reason"] = verdict.reason
            return result

        mountpoint = result["mountpoint"]
        try:
            os.mkdir(mountpoint)
        except FileExistsError:
            result["reason"] = f"{mountpoint} already exists (mounted or mount in progress)"
            return result
        except OSError as exc:
            result["reason"] = f"Cannot create {mountpoint}: {exc.strerror}"
            return result
        result["state"] = MountState.CREATED.value

        cmd = self.profile.privileged(["mount", "-t", FS_TYPE, "-o", MOUNT_OPTIONS,
                                       container, mountpoint])
        r = run_command(cmd, timeout=TIMEOUT_MOUNT)
        if r["success"]:
            result["state"] = MountState.MOUNTED.value
            logger.info(f"Mounted {container} on {mountpoint}")
            return result

        result["state"]  = MountState.FAILED.value
        result["reason"] = f"mount failed: {r['stderr'] or r['returncode']}"
        try:
            os.rmdir(mountpoint)
            result["state"] = MountState.ABSENT.value
        except OSError as exc:
            result["reason"] += f"; could not remove {mountpoint}: {exc.strerror}"
            result["cleanupFailed"] = True
        return result

    def mount(self, containers: List[str]) -> List[Dict[str, Any]]:
        return [self.mount_one(c) for c in containers]

    def unmount_one(self, target: str) -> Dict[str, Any]:
        mountpoint = target.rstrip(os.sep) or target
        result = {"target": target, "mountpoint": mountpoint,
                  "state": None, "reason": None}

        if not os.path.exists(mountpoint):
            result["state"]  = MountState.ABSENT.value
            result["reason"] = f"{mountpoint} does not exist"
        elif not mountpoint.endswith(CONTAINER_SUFFIX + SIDECAR_SUFFIX):
            result["reason"] = f"{mountpoint} is not a {CONTAINER_SUFFIX}{SIDECAR_SUFFIX} mount point"
        elif not os.path.ismount(mountpoint):
            result["state"]  = MountState.CREATED.value
            result["reason"] = f"{mountpoint} is not mounted"
        if result["reason"]:
            return result
        result["state"] = MountState.MOUNTED.value

        r = run_command(self.profile.privileged(["umount", mountpoint]), timeout=TIMEOUT_MOUNT)
        if not r["success"]:
            result["reason"] = f"umount failed: {r['stderr'] or r['returncode']}"
            return result

        try:
            os.rmdir(mountpoint)
        except OSError as exc:
            result["state"] = MountState.CREATED.value
            if exc.errno in (errno.ENOTEMPTY, errno.EEXIST, errno.EBUSY):
                result["reason"] = f"{mountpoint} unmounted but not empty, left in place"
            else:
                result["reason"] = f"{mountpoint} unmounted but could not be removed: {exc.strerror}"
                result["cleanupFailed"] = True
            return result

        result["state"] = MountState.UNMOUNTED.value
        logger.info(f"Unmounted and removed {mountpoint}")
        return result

    def unmount(self, mountpoints: List[str]) -> List[Dict[str, Any]]:
        return [self.unmount_one(m) for m in mountpoints]
