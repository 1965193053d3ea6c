"""Shared test fixtures for the docbuilder test suite.

The sandbox and fetcher doubles imitate their real counterparts on the
local filesystem: the fetcher writes a crate source tree, and a successful
sandbox build writes a doc tree into the package's build directory.
"""

from __future__ import annotations

import shlex
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite
import pytest

from docbuilder.builder import DocBuilder
from docbuilder.config import BuilderSettings
from docbuilder.fetcher import FetchedPackage
from docbuilder.metadata import library_target_name
from docbuilder.models.package import PackageIdentity
from docbuilder.queue import BuildQueue
from docbuilder.sandbox import CommandResult
from docbuilder.storage import Storage, init_db

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from docbuilder.errors import DocBuilderError
    from docbuilder.models.package import BuildAttemptResult

HOST_TARGET = "x86_64-unknown-linux-gnu"
TOOLCHAIN_VERSION = "rustc 1.80.0-nightly (abc1234 2024-05-01)"
ORCHESTRATOR_VERSION = "cratesfyi 0.6.0 (def5678 2024-05-02)"
VERSION_TAG = "20240501-rustc-abc1234"


# ---------------------------------------------------------------------------
# Doubles
# ---------------------------------------------------------------------------


class FakeSandbox:
    """SandboxProtocol double that understands version, build and rm commands."""

    def __init__(self, settings: BuilderSettings) -> None:
        self._settings = settings
        self.commands: list[str] = []
        self.versions = {"rustc": TOOLCHAIN_VERSION, "cratesfyi": ORCHESTRATOR_VERSION}
        self.unavailable: set[str] = set()
        self.failing_targets: set[str] = set()
        self.cleanup_fails = False

    @property
    def build_commands(self) -> list[str]:
        return [command for command in self.commands if " doc " in command]

    async def run(self, command: str) -> CommandResult:
        self.commands.append(command)
        argv = shlex.split(command)
        # Drop leading KEY=value assignments
        while argv and "=" in argv[0] and not argv[0].startswith("="):
            argv.pop(0)

        if argv[1:] == ["--version"]:
            if argv[0] in self.unavailable:
                return CommandResult(output=f"{argv[0]}: command not found\n", success=False)
            return CommandResult(output=self.versions[argv[0]] + "\n", success=True)

        if argv[0] == "rm":
            return CommandResult(output="", success=not self.cleanup_fails)

        name, requirement = argv[2], argv[3]
        target = argv[argv.index("--target") + 1]
        if target in self.failing_targets:
            return CommandResult(output=f"error: could not document `{name}`\n", success=False)
        self._write_docs(name, requirement.lstrip("="))
        return CommandResult(output=f"Documenting {name} for {target}\n", success=True)

    def _write_docs(self, name: str, version: str) -> None:
        doc_dir = (
            Path(self._settings.chroot_path)
            / "home"
            / self._settings.chroot_user
            / f"{name}-{version}"
            / "doc"
        )
        crate_dir = doc_dir / name.replace("-", "_")
        crate_dir.mkdir(parents=True, exist_ok=True)
        (crate_dir / "index.html").write_text(f"<h1>{name}</h1>")
        (doc_dir / "search-index.js").write_text("var searchIndex = {};")
        (doc_dir / f"main-{VERSION_TAG}.js").write_text("// shared")
        (doc_dir / ".lock").write_text("")


class FakeFetcher:
    """FetcherProtocol double that writes a small crate source tree."""

    def __init__(self, sources_path: Path) -> None:
        self._sources_path = sources_path
        self.manifests: dict[str, str] = {}
        self.errors: dict[str, BaseException] = {}
        self.with_examples: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    async def fetch(self, name: str, version_requirement: str) -> FetchedPackage:
        self.calls.append((name, version_requirement))
        if name in self.errors:
            raise self.errors[name]

        identity = PackageIdentity(name=name, version=version_requirement.lstrip("="))
        source_dir = self._sources_path / identity.name / identity.version
        (source_dir / "src").mkdir(parents=True, exist_ok=True)
        manifest = self.manifests.get(
            name, f'[package]\nname = "{name}"\nversion = "{identity.version}"\n'
        )
        (source_dir / "Cargo.toml").write_text(manifest)
        (source_dir / "src" / "lib.rs").write_text("pub struct Foo;\n")
        if name in self.with_examples:
            (source_dir / "examples").mkdir(exist_ok=True)
            (source_dir / "examples" / "demo.rs").write_text("fn main() {}\n")

        return FetchedPackage(
            identity=identity,
            source_dir=source_dir,
            manifest=manifest,
            primary_target=library_target_name(manifest, name),
        )


class FakeStorage:
    """StorageProtocol double that records every call."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.existing: set[str] = set()
        self.releases: dict[str, BuildAttemptResult] = {}
        self.builds: list[tuple[int, BuildAttemptResult]] = []
        self.trees: dict[str, list[str]] = {}
        self.error: DocBuilderError | None = None

    @property
    def writes(self) -> list[str]:
        return [call for call in self.calls if call != "release_exists"]

    def _record(self, call: str) -> None:
        self.calls.append(call)
        if self.error is not None and call != "release_exists":
            raise self.error

    async def add_package(self, identity: PackageIdentity, result: BuildAttemptResult) -> int:
        self._record("add_package")
        self.releases[identity.canonical_name] = result
        return len(self.releases)

    async def add_build(self, release_id: int, result: BuildAttemptResult) -> None:
        self._record("add_build")
        self.builds.append((release_id, result))

    async def add_path_tree(self, prefix: str, local_directory: Path) -> int:
        self._record("add_path_tree")
        files = sorted(
            path.relative_to(local_directory).as_posix()
            for path in local_directory.rglob("*")
            if path.is_file()
        )
        self.trees[prefix] = files
        return len(files)

    async def release_exists(self, identity: PackageIdentity) -> bool:
        self._record("release_exists")
        return identity.canonical_name in self.existing


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
async def db() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory database with the full schema."""
    async with aiosqlite.connect(":memory:") as connection:
        await init_db(connection)
        yield connection


@pytest.fixture()
def storage(db: aiosqlite.Connection) -> Storage:
    return Storage(db)


@pytest.fixture()
def build_queue(db: aiosqlite.Connection) -> BuildQueue:
    return BuildQueue(db, max_attempts=3)


@pytest.fixture()
def builder_settings(tmp_path: Path) -> BuilderSettings:
    """Builder settings with every path inside tmp_path."""
    return BuilderSettings(
        chroot_path=str(tmp_path / "chroot"),
        chroot_user="builder",
        container_name="test-container",
        destination=str(tmp_path / "public_html" / "crates"),
        sources_path=str(tmp_path / "sources"),
    )


@pytest.fixture()
def sandbox(builder_settings: BuilderSettings) -> FakeSandbox:
    return FakeSandbox(builder_settings)


@pytest.fixture()
def fetcher(builder_settings: BuilderSettings) -> FakeFetcher:
    return FakeFetcher(Path(builder_settings.sources_path))


@pytest.fixture()
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture()
def doc_builder(
    builder_settings: BuilderSettings,
    sandbox: FakeSandbox,
    fetcher: FakeFetcher,
    fake_storage: FakeStorage,
) -> DocBuilder:
    """DocBuilder wired to the in-memory doubles."""

    @asynccontextmanager
    async def connect() -> AsyncIterator[FakeStorage]:
        yield fake_storage

    return DocBuilder(
        builder_settings,
        sandbox=sandbox,
        fetcher=fetcher,
        connect=connect,
        host_target=HOST_TARGET,
    )
