from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType

from pydantic import BaseModel, ConfigDict, field_validator


class ManifestFragment(BaseModel):
    """Contents of ``[package.metadata.docs.rs]`` in a crate manifest.

    Every field is optional; an absent section is equal to ``ManifestFragment()``.
    ``None`` means "not set", which is distinct from an explicitly empty list.
    """

    model_config = ConfigDict(frozen=True)

    features: tuple[str, ...] | None = None
    all_features: bool = False
    no_default_features: bool = False
    default_target: str | None = None
    targets: tuple[str, ...] | None = None
    rustc_args: tuple[str, ...] | None = None
    rustdoc_args: tuple[str, ...] | None = None


class BuildTargets(BaseModel):
    """Targets a crate is built for.

    ``default_target`` is the target used as the crate's home page and is
    never a member of ``other_targets``.
    """

    model_config = ConfigDict(frozen=True)

    default_target: str
    other_targets: frozenset[str] = frozenset()


class BuildPlan(BaseModel):
    """Fully resolved build configuration derived from a ManifestFragment.

    ``env_vars`` is stored as a read-only mapping so a plan stays immutable.
    """

    model_config = ConfigDict(frozen=True)

    default_target: str
    other_targets: frozenset[str]
    cli_args: tuple[str, ...]
    env_vars: Mapping[str, str]

    @field_validator("env_vars", mode="after")
    @classmethod
    def _read_only_env(cls, value: Mapping[str, str]) -> Mapping[str, str]:
        return MappingProxyType(dict(value))

    @property
    def all_targets(self) -> list[str]:
        """Default target first, then the others in a stable order."""
        return [self.default_target, *sorted(self.other_targets)]
