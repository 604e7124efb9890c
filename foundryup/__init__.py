# -*- coding: utf-8 -*-
"""
foundryup.__init__

Installer and version manager for the Foundry toolchain.

Exports:
    - InstallOrchestrator : Classifies a Request and runs the matching install pipeline.
    - Request             : Parsed install request (version, branch/PR/commit, overrides).
    - VersionStore        : On-disk version directories and activation into bin/.
    - SelfUpdater         : Checks for and installs newer foundryup releases.
    - FoundryupError      : Base class of every expected failure.
"""

__version__ = "1.4.0"

from .errors import FoundryupError  # noqa: E402
from .installer import InstallOrchestrator, Request  # noqa: E402
from .self_update import SelfUpdater  # noqa: E402
from .versions import VersionStore  # noqa: E402

__all__ = [
    "__version__",
    "FoundryupError",
    "InstallOrchestrator",
    "Request",
    "SelfUpdater",
    "VersionStore",
]
