"""
    Copyright (c) 2025 Bc. Dominik Sabota, VUT FIT Brno

    ptsfsimage - External command execution helpers

    This program is free software: you can redistribute it and/or modify
    it under the terms of the GNU General Public License as published by
    the Free Software Foundation, either version 3 of the License.
    See <https://www.gnu.org/licenses/> for details.
"""

import logging
import shutil
import subprocess
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger("ptsfsimage.runner")


def run_command(cmd: List[str], timeout: Optional[int] = None) -> Dict[str, Any]:
    """
    Execute a command and capture its output.
    Never raises for a non-zero exit; callers decide whether that is fatal.
    """
    base = {"success": False, "stdout": "", "stderr": "", "returncode": -1, "duration": 0.0}
    logger.debug(f"Executing: {' '.join(cmd)}")
    try:
        t0   = time.time()
        proc = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, check=False)
        base.update({"success": proc.returncode == 0, "stdout": proc.stdout.strip(),
                     "stderr": proc.stderr.strip(), "returncode": proc.returncode,
                     "duration": time.time() - t0})
    except subprocess.TimeoutExpired:
        base["stderr"] = f"Timeout after {timeout}s"
    except OSError as exc:
        base["stderr"] = str(exc)
    if not base["success"]:
        logger.warning(f"Command failed ({base['returncode']}): {' '.join(cmd)}: {base['stderr']}")
    return base


def tool_available(name: str) -> bool:
    return shutil.which(name) is not None
