# SPDX-License-Identifier: MIT
"""Refuse to overwrite managed binaries while one of them is running."""
from __future__ import annotations

import logging
import os
from typing import Iterable

import psutil

from .errors import BinaryInUseError

logger = logging.getLogger("foundryup.processes")


def _matches(process_name: str, binary: str) -> bool:
    n = process_name.lower()
    for candidate in (binary.lower(), f"{binary.lower()}.exe"):
        if n == candidate or n.endswith("/" + candidate):
            return True
    return False


def check_bins_in_use(binary_names: Iterable[str]) -> None:
    """
    Raise BinaryInUseError if any process is running one of ``binary_names``.

    Processes that exit or deny access while being inspected are ignored.
    """
    names = list(binary_names)
    me = os.getpid()
    for proc in psutil.process_iter(["pid", "name"]):
        try:
            info = proc.info
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            continue
        if info.get("pid") == me:
            continue
        pname = info.get("name") or ""
        for binary in names:
            if _matches(pname, binary):
                logger.debug("processes: pid %s is running %s", info.get("pid"), binary)
                raise BinaryInUseError(
                    f"'{binary}' is currently running, please stop the process and try again"
                )
