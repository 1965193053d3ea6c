from __future__ import annotations

import re
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, field_validator

_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")
_VERSION_RE = re.compile(r"^\d+\.\d+\.\d+(?:-[0-9A-Za-z.-]+)?(?:\+[0-9A-Za-z.-]+)?$")


class PackageIdentity(BaseModel):
    """One buildable unit: a crate name pinned to an exact semantic version."""

    model_config = ConfigDict(frozen=True)

    name: str
    version: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not _NAME_RE.match(v):
            raise ValueError(f"Invalid package name: {v!r}")
        return v

    @field_validator("version")
    @classmethod
    def validate_version(cls, v: str) -> str:
        if not _VERSION_RE.match(v):
            raise ValueError(f"Invalid semantic version: {v!r}")
        return v

    @property
    def canonical_name(self) -> str:
        """``name-version``; the skip-cache key and the sandbox build directory name."""
        return f"{self.name}-{self.version}"

    @property
    def version_requirement(self) -> str:
        """Exact-version requirement handed to the fetcher."""
        return f"={self.version}"

    def __str__(self) -> str:
        return self.canonical_name


class BuildAttemptResult(BaseModel):
    """Outcome of running one package through the sandbox."""

    output: str  # Combined stdout + stderr of every target invocation
    build_success: bool  # Authoritative: the default-target invocation only
    has_documentation: bool
    has_examples: bool
    toolchain_version: str  # e.g. "rustc 1.10.0-nightly (57ef01513 2016-05-23)"
    orchestrator_version: str
    failed_targets: list[str] = []


class BuildOutcome(StrEnum):
    SKIPPED = "skipped"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class QueuedCrate(BaseModel):
    """Single row of the durable build queue."""

    id: int
    name: str
    version: str
    priority: int = 0
    attempt: int = 0

    @property
    def identity(self) -> PackageIdentity:
        return PackageIdentity(name=self.name, version=self.version)
