from __future__ import annotations

from docbuilder.models.metadata import BuildPlan, BuildTargets, ManifestFragment
from docbuilder.models.package import (
    BuildAttemptResult,
    BuildOutcome,
    PackageIdentity,
    QueuedCrate,
)

__all__ = [
    # package
    "PackageIdentity",
    "BuildAttemptResult",
    "BuildOutcome",
    "QueuedCrate",
    # metadata
    "ManifestFragment",
    "BuildTargets",
    "BuildPlan",
]
