"""docbuilder: builds rustdoc output for queued crates and stores it.

``__version__`` is the installed distribution version. The worker logs it
at start-up and the registry client sends it as its User-Agent.
"""

from __future__ import annotations

import warnings
import importlib.metadata as _importlib_metadata

DISTRIBUTION = "docbuilder"
UNKNOWN_VERSION = "0.0.0+unknown"


def installed_version() -> str:
    """Version of the installed ``docbuilder`` distribution, or UNKNOWN_VERSION."""
    try:
        return _importlib_metadata.version(DISTRIBUTION)
    except _importlib_metadata.PackageNotFoundError:
        # Running from a checkout that was never installed
        warnings.warn(
            f"{DISTRIBUTION} is not installed; reporting version {UNKNOWN_VERSION}",
            RuntimeWarning,
            stacklevel=2,
        )
        return UNKNOWN_VERSION


__version__ = installed_version()
