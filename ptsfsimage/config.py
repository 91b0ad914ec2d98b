"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Layered configuration profile

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import os
import shlex
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Tuple

from .errors import ValidationError

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

SYSTEM_CONFIG  = "/etc/sfsimage.conf"
USER_CONFIG    = "~/.sfsimage.conf"
LOCAL_CONFIG   = "./sfsimage.conf"

CONTAINER_SUFFIX = ".sfs"
SIDECAR_SUFFIX   = ".d"
FS_TYPE          = "squashfs"
IMAGE_ENTRY      = "image.raw"

DEFAULT_DATA_MOVER = "dc3dd {input} log={errorlog} hlog={hashlog} hash={hash}"
SUPPORTED_HASHES   = ("md5", "sha1", "sha256", "sha512")

# config file key -> ConfigProfile attribute
RECOGNIZED_KEYS = {
    "DD":        "data_mover",
    "HASH":      "hash_algorithm",
    "SQSUDO":    "privilege_command",
    "SQFSOWNER": "owner",
    "SQFSGROUP": "group",
    "SQFSMODE":  "mode",
    "SQFSCOMP":  "compression",
}

logger = logging.getLogger("ptsfsimage.config")


@dataclass(frozen=True)
class ConfigProfile:
    """Settings shared by every component for the duration of one invocation."""
    data_mover:        str = DEFAULT_DATA_MOVER
    hash_algorithm:    str = "md5"
    privilege_command: str = "sudo"
    owner:             str = "0"
    group:             str = "0"
    mode:              str = "444"
    compression:       str = "zstd"
    sources:           Tuple[str, ...] = field(default_factory=tuple)

    @property
    def mode_bits(self) -> int:
        return int(self.mode, 8)

    def privileged(self, cmd: List[str]) -> List[str]:
        """Prefix cmd with the privilege invoker unless we already are root."""
        if os.geteuid() == 0 or not self.privilege_command.strip():
            return list(cmd)
        return shlex.split(self.privilege_command) + list(cmd)

    def data_mover_command(self, source: Optional[str], hashlog: str, errorlog: str) -> List[str]:
        """Expand the data mover template; source None means standard input."""
        values = {
            "input":    f"if={source}" if source else "",
            "hashlog":  hashlog,
            "errorlog": errorlog,
            "hash":     self.hash_algorithm,
        }
        try:
            cmd = [token.format(**values) for token in shlex.split(self.data_mover)]
        except (KeyError, IndexError, ValueError) as exc:
            raise ValidationError(f"Invalid data mover template {self.data_mover!r}: {exc}") from exc
        return [token for token in cmd if token]


def parse_config_file(path: Path) -> Dict[str, str]:
    """Read KEY=VALUE assignments written in shell syntax."""
    values: Dict[str, str] = {}
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export "):].lstrip()
        key, sep, raw = line.partition("=")
        key = key.strip()
        if not sep or not key.isidentifier():
            logger.warning(f"{path}:{lineno}: ignoring malformed line")
            continue
        try:
            tokens = shlex.split(raw, comments=True)
        except ValueError as exc:
            raise ValidationError(f"{path}:{lineno}: {exc}") from exc
        values[key] = " ".join(tokens)
    return values


def _check(profile: ConfigProfile) -> ConfigProfile:
    try:
        bits = int(profile.mode, 8)
    except ValueError:
        raise ValidationError(f"SQFSMODE must be an octal mode, got {profile.mode!r}")
    if not 0 <= bits <= 0o7777:
        raise ValidationError(f"SQFSMODE out of range: {profile.mode}")
    if profile.hash_algorithm not in SUPPORTED_HASHES:
        raise ValidationError(f"HASH must be one of {', '.join(SUPPORTED_HASHES)}, "
                              f"got {profile.hash_algorithm!r}")
    if not profile.data_mover.strip():
        raise ValidationError("DD must not be empty")
    return profile


def default_config_paths() -> List[Path]:
    return [Path(SYSTEM_CONFIG), Path(USER_CONFIG).expanduser(), Path(LOCAL_CONFIG)]


def load_profile(paths: Optional[List[Path]] = None,
                 extra: Optional[str] = None) -> ConfigProfile:
    """
    Resolve the profile once: defaults, then each existing override file in
    order (system, user, current directory), then the optional extra file.
    Later files win key by key.
    """
    candidates = list(paths) if paths is not None else default_config_paths()
    if extra:
        extra_path = Path(extra)
        if not extra_path.is_file():
            raise ValidationError(f"Config file not found: {extra}")
        candidates.append(extra_path)

    profile = ConfigProfile()
    for path in candidates:
        if not path.is_file():
            continue
        overrides = {}
        for key, value in parse_config_file(path).items():
            if key in RECOGNIZED_KEYS:
                overrides[RECOGNIZED_KEYS[key]] = value
            else:
                logger.info(f"{path}: unrecognised key {key} ignored")
        logger.debug(f"Applying {path}: {sorted(overrides)}")
        profile = replace(profile, sources=profile.sources + (str(path),), **overrides)

    return _check(profile)


def invoking_user(environ: Optional[Mapping[str, str]] = None) -> Optional[Tuple[int, int]]:
    """uid/gid of the user who ran us through sudo, if any."""
    env = os.environ if environ is None else environ
    uid, gid = env.get("SUDO_UID"), env.get("SUDO_GID")
    if uid and gid and uid.isdigit() and gid.isdigit():
        return int(uid), int(gid)
    return None
