"""Sandboxed documentation build of a single package.

DocBuilder drives one package through: skip check → exact-version fetch →
build plan → one sandbox build per target → source persistence →
documentation copy and persistence → release/build records → cleanup →
local skip cache insert. All collaborator calls are awaited in order, so a
worker never has two builds in flight.
"""

from __future__ import annotations

import os
import shlex
import shutil
from pathlib import Path
from typing import TYPE_CHECKING

import structlog

from docbuilder.errors import DocBuilderError, ErrorCode, ToolchainVersionError, report_error
from docbuilder.metadata import HOST_TARGET, resolve
from docbuilder.models.package import BuildAttemptResult, BuildOutcome, PackageIdentity
from docbuilder.sandbox import with_environment
from docbuilder.state import SkipCaches
from docbuilder.versions import canonical_version_tag

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable
    from contextlib import AbstractAsyncContextManager

    from docbuilder.config import BuilderSettings
    from docbuilder.fetcher import FetchedPackage
    from docbuilder.models.metadata import BuildPlan
    from docbuilder.protocols import FetcherProtocol, SandboxProtocol, StorageProtocol

log = structlog.get_logger()

SOURCES_PREFIX = "sources"
DOCUMENTATION_PREFIX = "rustdoc"


def build_command(doc_tool: str, identity: PackageIdentity, target: str, plan: BuildPlan) -> str:
    """Shell command that builds one target of a package inside the sandbox.

    ``RUSTDOCFLAGS=... cratesfyi doc serde =1.0.0 --target <t> -- doc --lib --no-deps``
    """
    argv = [
        doc_tool,
        "doc",
        identity.name,
        identity.version_requirement,
        "--target",
        target,
        "--",
        *plan.cli_args,
    ]
    return with_environment(shlex.join(argv), plan.env_vars)


def _ignore_unpublished(version_tag: str) -> Callable[[str, list[str]], set[str]]:
    def ignore(directory: str, names: list[str]) -> set[str]:
        return {
            name
            for name in names
            # Links written by the build could point anywhere on the host
            if os.path.islink(os.path.join(directory, name))
            or name.endswith(".lock")
            or f"-{version_tag}" in name
        }

    return ignore


def copy_doc_dir(source: Path, destination: Path, version_tag: str) -> None:
    """Copy ``<source>/doc`` to ``destination``.

    Lock files, symlinks and the toolchain's shared static assets (whose
    names carry ``-<version_tag>``) are not copied per package. Raises
    OSError if the doc directory is missing or is itself a link.
    """
    doc_dir = source / "doc"
    if source.is_symlink() or doc_dir.is_symlink():
        raise OSError(f"refusing to copy documentation through a symlink at {doc_dir}")
    shutil.copytree(
        doc_dir,
        destination,
        ignore=_ignore_unpublished(version_tag),
        dirs_exist_ok=True,
    )


class DocBuilder:
    """Build executor: builds package documentation in the sandbox and stores it."""

    def __init__(
        self,
        settings: BuilderSettings,
        *,
        sandbox: SandboxProtocol,
        fetcher: FetcherProtocol,
        connect: Callable[[], AbstractAsyncContextManager[StorageProtocol]],
        caches: SkipCaches | None = None,
        host_target: str = HOST_TARGET,
    ) -> None:
        self._settings = settings
        self._sandbox = sandbox
        self._fetcher = fetcher
        self._connect = connect
        self.caches = caches if caches is not None else SkipCaches()
        self._host_target = host_target

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def build_dir(self, identity: PackageIdentity) -> Path:
        """``<chroot>/home/<user>/<name>-<version>``, where the sandbox writes output."""
        return (
            Path(self._settings.chroot_path)
            / "home"
            / self._settings.chroot_user
            / identity.canonical_name
        )

    def documentation_dir(self, identity: PackageIdentity) -> Path:
        return Path(self._settings.destination) / identity.name / identity.version

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def build_package(
        self,
        name: str,
        version: str,
        *,
        skip_if_logged: bool | None = None,
        skip_if_stored: bool | None = None,
    ) -> BuildOutcome:
        """Build one package and persist its sources, documentation and records.

        A failing build is not an error: it returns BuildOutcome.FAILED after
        recording the failed build. DocBuilderError is raised for manifest,
        fetch, toolchain, storage and cleanup failures.
        """
        try:
            identity = PackageIdentity(name=name, version=version)
        except ValueError as exc:
            raise DocBuilderError(
                code=ErrorCode.INVALID_PACKAGE,
                message=f"Invalid package {name} {version}: {exc}",
                recoverable=False,
            ) from exc

        if skip_if_logged is None:
            skip_if_logged = self._settings.skip_if_log_exists
        if skip_if_stored is None:
            skip_if_stored = self._settings.skip_if_exists

        bound_log = log.bind(package=identity.canonical_name)
        bound_log.info("build_started")

        async with self._connect() as storage:
            if await self._should_skip(storage, identity, skip_if_logged, skip_if_stored):
                bound_log.info("build_skipped")
                return BuildOutcome.SKIPPED

            package = await self._fetcher.fetch(identity.name, identity.version_requirement)
            try:
                result = await self._build_and_record(storage, package)
            except Exception:
                await self._discard(package)
                raise

            await self._clean(package)

        self.caches.local.add(identity.canonical_name)

        bound_log.info(
            "build_complete",
            success=result.build_success,
            has_documentation=result.has_documentation,
            failed_targets=result.failed_targets,
        )
        return BuildOutcome.SUCCEEDED if result.build_success else BuildOutcome.FAILED

    async def build_world(self, identities: Iterable[PackageIdentity]) -> int:
        """Build every package in ``identities``. Returns the number that succeeded.

        Per-package errors are logged and do not stop the run.
        """
        succeeded = 0
        for identity in identities:
            try:
                outcome = await self.build_package(identity.name, identity.version)
            except DocBuilderError as exc:
                log.warning(
                    "build_world_package_failed",
                    package=identity.canonical_name,
                    code=exc.code,
                    message=exc.message,
                )
            else:
                if outcome is BuildOutcome.SUCCEEDED:
                    succeeded += 1
            self.caches.local.add(identity.canonical_name)
        return succeeded

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _build_and_record(
        self, storage: StorageProtocol, package: FetchedPackage
    ) -> BuildAttemptResult:
        """Build a fetched package, then persist its trees and records."""
        identity = package.identity
        plan = resolve(package.manifest, host_target=self._host_target)
        result = await self._build_in_sandbox(package, plan)

        await storage.add_path_tree(
            f"{SOURCES_PREFIX}/{identity.name}/{identity.version}", package.source_dir
        )

        if result.has_documentation:
            try:
                self._copy_documentation(identity, result.toolchain_version)
            except ToolchainVersionError as exc:
                report_error(exc, "documentation_copy_failed", package=identity.canonical_name)
                result = result.model_copy(update={"has_documentation": False})
            else:
                await storage.add_path_tree(
                    f"{DOCUMENTATION_PREFIX}/{identity.name}/{identity.version}",
                    self.documentation_dir(identity),
                )

        release_id = await storage.add_package(identity, result)
        await storage.add_build(release_id, result)
        return result

    async def _should_skip(
        self,
        storage: StorageProtocol,
        identity: PackageIdentity,
        skip_if_logged: bool,
        skip_if_stored: bool,
    ) -> bool:
        if skip_if_logged and identity.canonical_name in self.caches.local:
            return True
        if skip_if_stored and await self.caches.durable.contains(storage, identity):
            return True
        return False

    async def _run_checked(self, command: str) -> str:
        result = await self._sandbox.run(command)
        if not result.success:
            raise DocBuilderError(
                code=ErrorCode.TOOLCHAIN_UNAVAILABLE,
                message=f"`{command}` failed in the sandbox: {result.output.strip()}",
                recoverable=True,
            )
        return result.output.strip()

    async def toolchain_versions(self) -> tuple[str, str]:
        """Return ``(toolchain, orchestrator)`` identification strings from the sandbox."""
        toolchain = await self._run_checked(f"{self._settings.toolchain_command} --version")
        orchestrator = await self._run_checked(f"{self._settings.doc_tool} --version")
        return toolchain, orchestrator

    async def _build_in_sandbox(
        self, package: FetchedPackage, plan: BuildPlan
    ) -> BuildAttemptResult:
        """Run the build once per target.

        Every target is attempted even after a failure. Only the default
        target decides ``build_success``; other failures are listed in
        ``failed_targets``.
        """
        identity = package.identity
        toolchain_version, orchestrator_version = await self.toolchain_versions()

        outputs: list[str] = []
        failed_targets: list[str] = []
        default_success = False

        for target in plan.all_targets:
            command = build_command(self._settings.doc_tool, identity, target, plan)
            result = await self._sandbox.run(command)
            outputs.append(result.output)

            if target == plan.default_target:
                default_success = result.success
            if not result.success:
                failed_targets.append(target)
                log.warning(
                    "target_build_failed",
                    package=identity.canonical_name,
                    target=target,
                    default=target == plan.default_target,
                )

        return BuildAttemptResult(
            output="".join(outputs),
            build_success=default_success,
            has_documentation=default_success and self._have_documentation(package),
            has_examples=self._have_examples(package),
            toolchain_version=toolchain_version,
            orchestrator_version=orchestrator_version,
            failed_targets=failed_targets,
        )

    def _have_documentation(self, package: FetchedPackage) -> bool:
        """Documentation exists if the primary target's doc directory was produced."""
        return (self.build_dir(package.identity) / "doc" / package.primary_target).exists()

    def _have_examples(self, package: FetchedPackage) -> bool:
        return (package.source_dir / "examples").is_dir()

    def _copy_documentation(self, identity: PackageIdentity, toolchain_version: str) -> None:
        version_tag = canonical_version_tag(toolchain_version)
        try:
            copy_doc_dir(self.build_dir(identity), self.documentation_dir(identity), version_tag)
        except OSError as exc:
            raise DocBuilderError(
                code=ErrorCode.STORAGE_FAILED,
                message=f"Failed to copy documentation of {identity}: {exc}",
                recoverable=True,
            ) from exc

    async def _clean(self, package: FetchedPackage) -> None:
        """Remove the sandbox build directory, staged documentation, and sources."""
        identity = package.identity
        result = await self._sandbox.run(f"rm -rf {shlex.quote(identity.canonical_name)}")
        if not result.success:
            raise DocBuilderError(
                code=ErrorCode.CLEANUP_FAILED,
                message=f"Failed to remove build directory of {identity}: {result.output.strip()}",
                recoverable=True,
            )

        for path in (self.documentation_dir(identity), package.source_dir):
            if not path.exists():
                continue
            try:
                shutil.rmtree(path)
            except OSError as exc:
                raise DocBuilderError(
                    code=ErrorCode.CLEANUP_FAILED,
                    message=f"Failed to remove {path}: {exc}",
                    recoverable=True,
                ) from exc

    async def _discard(self, package: FetchedPackage) -> None:
        """Best-effort cleanup after an aborted build; the abort reason still propagates."""
        try:
            await self._clean(package)
        except DocBuilderError as exc:
            report_error(
                exc, "aborted_build_cleanup_failed", package=package.identity.canonical_name
            )
