#!/usr/bin/env python3
"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - Forensic evidence container tool (SquashFS)

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import argparse
import logging
import shlex
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from ._version import __version__

from ptlibs import ptjsonlib, ptprinthelper
from ptlibs.ptprinthelper import ptprint

from .append import AppendOperation
from .builder import MKSQUASHFS
from .config import ConfigProfile, load_profile
from .create import CreateOperation
from .errors import SfsImageError, UsageError
from .lister import UNSQUASHFS, ContentLister
from .mount import MountManager, MountState
from .runner import tool_available

# ---------------------------------------------------------------------------
# CONSTANTS
# ---------------------------------------------------------------------------

SCRIPTNAME       = "ptsfsimage"
DEFAULT_LOG_DIR  = "/var/log/forensics"
FALLBACK_LOG_DIR = "/tmp/forensics"

MODES = {
    "create":  "-i",
    "append":  "-a",
    "list":    "-l",
    "mount":   "-m",
    "unmount": "-u",
}

# ---------------------------------------------------------------------------
# MAIN CLASS
# ---------------------------------------------------------------------------

class PtSfsImage:
    """
    Forensic evidence container tool – ptlibs compliant.

    One operation per invocation:
      -i  acquire a device, file or stdin into a new .sfs container
      -a  append files to an existing container
      -l  list container contents
      -m  mount containers on <container>.d (or list active mounts)
      -u  unmount <container>.d mount points

    Creation is fail-fast; the other operations skip bad targets and go on.
    """

    def __init__(self, args: argparse.Namespace, profile: Optional[ConfigProfile] = None) -> None:
        self.ptjsonlib = ptjsonlib.PtJsonLib()
        self.args      = args
        self.logger    = self._setup_logger()
        self.profile   = profile or load_profile(extra=args.config)

        self.ptjsonlib.add_properties({
            "operation":      args.mode,
            "targets":        list(args.targets),
            "timestamp":      datetime.now(timezone.utc).isoformat(),
            "scriptVersion":  __version__,
            "configSources":  list(self.profile.sources),
            "hashAlgorithm":  self.profile.hash_algorithm,
            "error":          None,
        })
        self.logger.debug(f"Initialized: mode={args.mode}, targets={args.targets}")

    # --- setup --------------------------------------------------------------

    def _setup_logger(self) -> logging.Logger:
        log_dir = Path(DEFAULT_LOG_DIR)
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_dir / f"sfsimage_{datetime.now().strftime('%Y%m%d')}.log")
        except PermissionError:
            log_dir = Path(FALLBACK_LOG_DIR)
            log_dir.mkdir(parents=True, exist_ok=True)
            handler = logging.FileHandler(log_dir / f"sfsimage_{datetime.now().strftime('%Y%m%d')}.log")

        # Component loggers are children of "ptsfsimage"; reset handlers so a
        # second instance in the same process does not log everything twice.
        logger = logging.getLogger("ptsfsimage")
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()
        logger.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter("%(asctime)s - %(levelname)s - %(message)s"))
        logger.addHandler(handler)
        if self.args.verbose and not self.args.json:
            logger.addHandler(logging.StreamHandler())
        return logger

    # --- helpers ------------------------------------------------------------

    def _add_node(self, node_type: str, success: bool, **kwargs) -> None:
        """Append a result node to the JSON output."""
        self.ptjsonlib.add_node(self.ptjsonlib.create_node_object(
            node_type,
            properties={"success": success, **kwargs},
        ))

    def _fail(self, message: str) -> int:
        ptprint(message, "ERROR", condition=not self.args.json)
        self.logger.error(message)
        self.ptjsonlib.add_properties({"error": message})
        return 1

    def _require_tools(self, *tools: str) -> bool:
        missing = [t for t in tools if not tool_available(t)]
        if missing:
            self._fail(f"Required tool(s) not found: {', '.join(missing)}")
            return False
        return True

    @staticmethod
    def _batch_exit(results: List[Dict[str, Any]]) -> int:
        """0 unless every target had to be skipped."""
        return 0 if not results or any(r.get("reason") is None for r in results) else 1

    # --- operations ---------------------------------------------------------

    def create(self) -> int:
        source, destination = self.args.targets
        ptprint(f"\nAcquiring {source} → {destination}", "TITLE", condition=not self.args.json)

        data_mover = shlex.split(self.profile.data_mover)[0]
        if not self._require_tools(MKSQUASHFS, data_mover):
            return 1

        operation = CreateOperation(self.profile,
                                    show_progress=not (self.args.json or self.args.quiet),
                                    invocation=shlex.join([SCRIPTNAME] + self.args.argv))
        try:
            result = operation.run(source, destination)
        except SfsImageError as exc:
            self._add_node("container", False, container=destination, source=source,
                           error=str(exc), errorType=type(exc).__name__)
            return self._fail(f"Acquisition failed ({type(exc).__name__}): {exc}")

        ptprint(f"Command:  {result['command']}", "INFO", condition=not self.args.json)
        ptprint(f"Acquired: {result['bytesAcquired']:,} bytes", "INFO", condition=not self.args.json)
        ptprint(f"{result['hashAlgorithm'].upper()}:      {result['streamHash']}",
                "INFO", condition=not self.args.json)
        for warning in result["warnings"]:
            ptprint(warning, "WARNING", condition=not self.args.json)
        ptprint(f"Container created: {result['container']}", "OK", condition=not self.args.json)
        self._add_node("container", True, **result)
        return 0

    def append(self) -> int:
        *files, destination = self.args.targets
        ptprint(f"\nAppending {len(files)} file(s) to {destination}", "TITLE", condition=not self.args.json)
        if not self._require_tools(MKSQUASHFS, UNSQUASHFS):
            return 1
        try:
            results = AppendOperation(self.profile).run(self.args.targets)
        except UsageError:
            raise
        except SfsImageError as exc:
            return self._fail(f"Cannot append to {destination}: {exc}")

        for r in results:
            if r["added"]:
                ptprint(f"Added {r['file']}", "OK", condition=not self.args.json)
            else:
                ptprint(f"Skipped {r['file']}: {r['reason']}", "WARNING", condition=not self.args.json)
            self._add_node("appendedFile", r["added"], **r)
        return 0

    def list_contents(self) -> int:
        if not self._require_tools(UNSQUASHFS):
            return 1
        results = ContentLister().list(self.args.targets)
        for r in results:
            if r["reason"]:
                ptprint(f"Skipping {r['container']}: {r['reason']}", "WARNING", condition=not self.args.json)
                self._add_node("container", False, container=r["container"], reason=r["reason"])
                continue
            ptprint(f"\nContents of {r['container']}:", "TITLE", condition=not self.args.json)
            for entry in r["entries"]:
                ptprint(entry.line, "", condition=not self.args.json)
            self._add_node("container", True, container=r["container"],
                           entries=[e.to_dict() for e in r["entries"]])
        return self._batch_exit(results)

    def list_mounted(self) -> int:
        ptprint("\nMounted evidence containers:", "TITLE", condition=not self.args.json)
        manager = MountManager(self.profile)
        try:
            mounts = manager.list_mounted()
        except OSError as exc:
            return self._fail(f"Cannot read mount table {manager.mount_table}: {exc}")
        if not mounts:
            ptprint("No containers mounted.", "INFO", condition=not self.args.json)
        for m in mounts:
            ptprint(f"{m['device']} on {m['mountpoint']} ({m['options']})", "INFO",
                    condition=not self.args.json)
            self._add_node("mountPoint", True, **m)
        return 0

    def mount(self) -> int:
        if not self.args.targets:
            return self.list_mounted()
        results = MountManager(self.profile).mount(self.args.targets)
        for r in results:
            self._report_mount(r, "Mounted", r["state"] == MountState.MOUNTED.value)
        return self._batch_exit(results)

    def unmount(self) -> int:
        results = MountManager(self.profile).unmount(self.args.targets)
        for r in results:
            self._report_mount(r, "Unmounted", r["state"] == MountState.UNMOUNTED.value)
        return self._batch_exit(results)

    def _report_mount(self, r: Dict[str, Any], verb: str, success: bool) -> None:
        if success:
            ptprint(f"{verb} {r['mountpoint']}", "OK", condition=not self.args.json)
        elif r.get("cleanupFailed"):
            ptprint(f"{r['target']}: {r['reason']}", "ERROR", condition=not self.args.json)
        else:
            ptprint(f"Skipping {r['target']}: {r['reason']}", "WARNING", condition=not self.args.json)
        self._add_node("mountPoint", success, **r)

    # --- run & save ---------------------------------------------------------

    def run(self) -> int:
        handler = {
            "create":  self.create,
            "append":  self.append,
            "list":    self.list_contents,
            "mount":   self.mount,
            "unmount": self.unmount,
        }[self.args.mode]
        code = handler()
        self.ptjsonlib.add_properties({"exitCode": code})
        self.ptjsonlib.set_status("finished")
        return code

    def save_report(self) -> None:
        """Print the JSON report to stdout when --json was requested."""
        if self.args.json:
            ptprint(self.ptjsonlib.get_result_json(), "", self.args.json)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:
        raise UsageError(message)


def get_help() -> List[Dict]:
    return [
        {"description": ["Forensic evidence container tool – ptlibs compliant",
                         "Acquires images straight into read-only SquashFS containers with a chain-of-custody log"]},
        {"usage": ["ptsfsimage -i <source> <container.sfs>",
                   "ptsfsimage -a <file>... <container.sfs>",
                   "ptsfsimage -l <container.sfs>...",
                   "ptsfsimage -m [<container.sfs>...]",
                   "ptsfsimage -u <container.sfs.d>..."]},
        {"usage_example": ["ptsfsimage -i /dev/sdb case-042.sfs",
                           "cat disk.img | ptsfsimage -i - case-042.sfs",
                           "ptsfsimage -a photo.jpg notes.txt case-042.sfs",
                           "ptsfsimage -m case-042.sfs",
                           "ptsfsimage -u case-042.sfs.d"]},
        {"options": [
            ["-i", "",             "<src> <dst>", "Create container from device, file or '-' (stdin)"],
            ["-a", "",             "<files> <dst>", "Append files to container"],
            ["-l", "",             "<containers>", "List container contents"],
            ["-m", "",             "[containers]", "Mount containers, or list mounted containers"],
            ["-u", "",             "<mountpoints>", "Unmount container mount points"],
            ["-c", "--config",     "<file>", "Extra config file applied after the standard ones"],
            ["-v", "--verbose",    "",      "Verbose logging"],
            ["-j", "--json",       "",      "JSON output for Penterep platform"],
            ["-q", "--quiet",      "",      "Suppress progress output"],
            ["-h", "--help",       "",      "Show help"],
            ["--version",          "",      "Show version"],
        ]},
        {"configuration": [
            "/etc/sfsimage.conf, ~/.sfsimage.conf, ./sfsimage.conf (later files win)",
            "DD, HASH, SQSUDO, SQFSOWNER, SQFSGROUP, SQFSMODE, SQFSCOMP",
        ]},
        {"forensic_notes": [
            "ALWAYS use a hardware write-blocker for device acquisition",
            "The raw image is streamed into the container, never written to disk",
            "Containers are read-only; append adds entries but changes container mtime",
        ]},
    ]


def _check_target_count(args: argparse.Namespace) -> None:
    n, flag = len(args.targets), MODES[args.mode]
    if args.mode == "create" and n != 2:
        raise UsageError(f"{flag} needs exactly a source and a destination container")
    if args.mode == "append" and n < 2:
        raise UsageError(f"{flag} needs at least one file and a destination container")
    if args.mode in ("list", "unmount") and n < 1:
        raise UsageError(f"{flag} needs at least one target")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    argv = sys.argv[1:] if argv is None else list(argv)

    parser = _ArgumentParser(add_help=False, prog=SCRIPTNAME)
    modes  = parser.add_mutually_exclusive_group()
    for mode, flag in MODES.items():
        modes.add_argument(flag, dest="mode", action="store_const", const=mode)
    parser.add_argument("targets", nargs="*")
    parser.add_argument("-c", "--config",  default=None)
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("-q", "--quiet",   action="store_true")
    parser.add_argument("-j", "--json",    action="store_true")
    parser.add_argument("--version", action="version", version=f"{SCRIPTNAME} {__version__}")
    parser.add_argument("--socket-address", default=None)
    parser.add_argument("--socket-port",    default=None)
    parser.add_argument("--process-ident",  default=None)

    if {"-h", "--help"} & set(argv):
        ptprinthelper.help_print(get_help(), SCRIPTNAME, __version__)
        sys.exit(0)

    args = parser.parse_args(argv)
    if args.mode is None:
        raise UsageError("one of -i, -a, -l, -m, -u is required")
    _check_target_count(args)

    args.argv = argv
    if args.json:
        args.quiet = True
    ptprinthelper.print_banner(SCRIPTNAME, __version__, args.json)
    return args


def main(argv: Optional[List[str]] = None) -> int:
    try:
        args = parse_args(argv)
        tool = PtSfsImage(args)
        code = tool.run()
        tool.save_report()
        return code

    except UsageError as exc:
        ptprint(f"Usage error: {exc}", "ERROR", condition=True)
        ptprinthelper.help_print(get_help(), SCRIPTNAME, __version__)
        return 1
    except SfsImageError as exc:
        ptprint(f"ERROR: {exc}", "ERROR", condition=True)
        return 1
    except KeyboardInterrupt:
        ptprint("Interrupted by user.", "WARNING", condition=True)
        return 130


if __name__ == "__main__":
    sys.exit(main())
