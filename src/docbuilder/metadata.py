"""Build configuration resolution.

Pure business logic: turns the ``[package.metadata.docs.rs]`` section of a
crate manifest into a BuildPlan (targets, cargo arguments, environment).
No knowledge of the sandbox, storage, or the queue. The only I/O is reading
the manifest file in ``from_crate_root``.

An example section::

    [package.metadata.docs.rs]
    features = [ "feature1", "feature2" ]
    all-features = true
    no-default-features = true
    default-target = "x86_64-unknown-linux-gnu"
    targets = [ "x86_64-apple-darwin", "x86_64-pc-windows-msvc" ]
    rustc-args = [ "--example-rustc-arg" ]
    rustdoc-args = [ "--example-rustdoc-arg" ]
"""

from __future__ import annotations

import platform
import sys
import tomllib
from typing import TYPE_CHECKING, Any

from docbuilder.errors import DocBuilderError, ErrorCode
from docbuilder.models.metadata import BuildPlan, BuildTargets, ManifestFragment

if TYPE_CHECKING:
    from pathlib import Path

# Tier-one targets built when a crate does not set `targets`.
DEFAULT_TARGETS: tuple[str, ...] = (
    "i686-pc-windows-msvc",
    "i686-unknown-linux-gnu",
    "x86_64-apple-darwin",
    "x86_64-pc-windows-msvc",
    "x86_64-unknown-linux-gnu",
)

BASE_CARGO_ARGS: tuple[str, ...] = ("doc", "--lib", "--no-deps")

RUSTFLAGS = "RUSTFLAGS"
RUSTDOCFLAGS = "RUSTDOCFLAGS"
# Lets build scripts detect that they run under the documentation builder.
DOCS_RS = "DOCS_RS"

MANIFEST_FILENAMES: tuple[str, ...] = ("Cargo.toml.orig", "Cargo.toml")

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i386": "i686",
    "i686": "i686",
    "x86": "i686",
}


def detect_host_target() -> str:
    """Return the target triple of the platform this process runs on."""
    machine = platform.machine().lower()
    # Unknown architectures keep their own name rather than posing as x86_64
    arch = _ARCH_ALIASES.get(machine, machine or "x86_64")
    if sys.platform == "darwin":
        return f"{arch}-apple-darwin"
    if sys.platform == "win32":
        return f"{arch}-pc-windows-msvc"
    return f"{arch}-unknown-linux-gnu"


HOST_TARGET = detect_host_target()


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _docs_table(manifest: dict[str, Any]) -> dict[str, Any] | None:
    node: Any = manifest
    for key in ("package", "metadata", "docs", "rs"):
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


def _string_list(table: dict[str, Any], key: str) -> tuple[str, ...] | None:
    """A list of strings, or None if the key is missing or any element is not a string."""
    value = table.get(key)
    if not isinstance(value, list):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return tuple(value)


def _flag(table: dict[str, Any], key: str) -> bool:
    value = table.get(key)
    return value if isinstance(value, bool) else False


def parse_manifest(manifest: str) -> ManifestFragment:
    """Parse manifest TOML text into a ManifestFragment.

    Raises DocBuilderError(MANIFEST_PARSE_FAILED) on malformed TOML. A
    manifest without a docs.rs section yields the all-default fragment.
    """
    try:
        document = tomllib.loads(manifest)
    except tomllib.TOMLDecodeError as exc:
        raise DocBuilderError(
            code=ErrorCode.MANIFEST_PARSE_FAILED,
            message=f"Failed to parse manifest: {exc}",
            recoverable=False,
        ) from exc

    table = _docs_table(document)
    if table is None:
        return ManifestFragment()

    default_target = table.get("default-target")
    return ManifestFragment(
        features=_string_list(table, "features"),
        all_features=_flag(table, "all-features"),
        no_default_features=_flag(table, "no-default-features"),
        default_target=default_target if isinstance(default_target, str) else None,
        targets=_string_list(table, "targets"),
        rustc_args=_string_list(table, "rustc-args"),
        rustdoc_args=_string_list(table, "rustdoc-args"),
    )


def read_crate_manifest(source_dir: Path) -> str:
    """Return the manifest text of a crate source tree.

    ``Cargo.toml.orig`` (the manifest as the author wrote it) takes
    precedence over the normalised ``Cargo.toml``.
    """
    for filename in MANIFEST_FILENAMES:
        manifest_path = source_dir / filename
        if manifest_path.is_file():
            try:
                return manifest_path.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as exc:
                raise DocBuilderError(
                    code=ErrorCode.MANIFEST_PARSE_FAILED,
                    message=f"Failed to read manifest {manifest_path}: {exc}",
                    recoverable=False,
                ) from exc

    raise DocBuilderError(
        code=ErrorCode.MANIFEST_NOT_FOUND,
        message=f"No Cargo.toml in {source_dir}",
        recoverable=False,
    )


def from_crate_root(source_dir: Path) -> ManifestFragment:
    """Read the manifest of a crate source tree, then parse the build metadata."""
    return parse_manifest(read_crate_manifest(source_dir))


def library_target_name(manifest: str, package_name: str) -> str:
    """Name of the crate's library target, which names its documentation directory.

    Falls back to the package name (with ``-`` replaced by ``_``) when the
    manifest is malformed or does not rename the library.
    """
    try:
        document = tomllib.loads(manifest)
    except tomllib.TOMLDecodeError:
        document = {}

    lib = document.get("lib")
    if isinstance(lib, dict) and isinstance(lib.get("name"), str) and lib["name"]:
        return lib["name"]
    return package_name.replace("-", "_")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def resolve_targets(fragment: ManifestFragment, *, host_target: str = HOST_TARGET) -> BuildTargets:
    """Return the targets that should be built.

    Default target priority: ``default-target``, then the first entry of a
    non-empty ``targets``, then the host. Unset ``targets`` builds all
    DEFAULT_TARGETS; an empty ``targets`` builds only the default target.
    """
    if fragment.default_target is not None:
        default_target = fragment.default_target
    elif fragment.targets:
        default_target = fragment.targets[0]
    else:
        default_target = host_target

    candidates = set(fragment.targets) if fragment.targets is not None else set(DEFAULT_TARGETS)
    candidates.discard(default_target)

    return BuildTargets(default_target=default_target, other_targets=frozenset(candidates))


def cargo_args(fragment: ManifestFragment) -> list[str]:
    """Arguments passed to ``cargo``. Never includes ``--target``."""
    args = list(BASE_CARGO_ARGS)

    if fragment.features is not None:
        args.append("--features")
        args.append(" ".join(fragment.features))

    if fragment.all_features:
        args.append("--all-features")

    if fragment.no_default_features:
        args.append("--no-default-features")

    return args


def environment_variables(fragment: ManifestFragment) -> dict[str, str]:
    """Environment for the build. All three keys are always present."""
    return {
        RUSTFLAGS: " ".join(fragment.rustc_args or ()),
        RUSTDOCFLAGS: " ".join(fragment.rustdoc_args or ()),
        DOCS_RS: "1",
    }


def resolve(
    manifest: str | ManifestFragment,
    *,
    host_target: str = HOST_TARGET,
) -> BuildPlan:
    """Resolve manifest text (or an already parsed fragment) into a BuildPlan."""
    fragment = parse_manifest(manifest) if isinstance(manifest, str) else manifest
    targets = resolve_targets(fragment, host_target=host_target)
    return BuildPlan(
        default_target=targets.default_target,
        other_targets=targets.other_targets,
        cli_args=tuple(cargo_args(fragment)),
        env_vars=environment_variables(fragment),
    )
