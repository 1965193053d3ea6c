"""Crate source fetcher.

Downloads the ``.crate`` archive of an exactly pinned version and extracts
it to ``<sources_path>/<name>/<version>/``. The CrateFetcher receives an
httpx.AsyncClient via constructor injection; ``main`` owns the client
lifecycle.
"""

from __future__ import annotations

import io
import shutil
import tarfile
import tempfile
from dataclasses import dataclass
from pathlib import Path

import httpx
import structlog

from docbuilder import __version__
from docbuilder.errors import DocBuilderError, ErrorCode
from docbuilder.metadata import library_target_name, read_crate_manifest
from docbuilder.models.package import PackageIdentity

log = structlog.get_logger()


def build_http_client(timeout_seconds: float = 30.0) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=True,
        timeout=httpx.Timeout(timeout_seconds),
        headers={"User-Agent": f"docbuilder/{__version__}"},
        limits=httpx.Limits(
            max_connections=4,
            max_keepalive_connections=2,
        ),
    )


@dataclass(frozen=True)
class FetchedPackage:
    """A package source tree extracted on the local filesystem."""

    identity: PackageIdentity
    source_dir: Path
    manifest: str
    primary_target: str


def pinned_version(version_requirement: str) -> str:
    """Return the version of an ``=x.y.z`` requirement.

    Ranges are rejected: the builder always documents one exact release.
    """
    if not version_requirement.startswith("="):
        raise DocBuilderError(
            code=ErrorCode.INVALID_VERSION_REQUEST,
            message=f"Version requirement {version_requirement!r} is not pinned with '='",
            recoverable=False,
        )
    return version_requirement[1:].strip()


class CrateFetcher:
    """Fetcher implementing FetcherProtocol."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        sources_path: Path,
        *,
        download_url: str,
        tempdir_prefix: str,
    ) -> None:
        self._client = client
        self._sources_path = sources_path
        self._download_url = download_url
        self._tempdir_prefix = tempdir_prefix

    def source_dir(self, identity: PackageIdentity) -> Path:
        return self._sources_path / identity.name / identity.version

    async def fetch(self, name: str, version_requirement: str) -> FetchedPackage:
        """Download and extract one exact package version.

        Raises DocBuilderError on invalid identities, network errors, non-2xx
        responses, and unreadable archives.
        """
        try:
            identity = PackageIdentity(name=name, version=pinned_version(version_requirement))
        except ValueError as exc:
            raise DocBuilderError(
                code=ErrorCode.INVALID_PACKAGE,
                message=f"Invalid package {name} {version_requirement}: {exc}",
                recoverable=False,
            ) from exc

        url = self._download_url.format(name=identity.name, version=identity.version)
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise DocBuilderError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Network error fetching {url}: {exc}",
                recoverable=True,
            ) from exc

        if not response.is_success:
            raise DocBuilderError(
                code=ErrorCode.FETCH_FAILED,
                message=f"HTTP {response.status_code} fetching {url}",
                # 404 means the release does not exist; retrying will not help
                recoverable=response.status_code != 404,
            )

        destination = self.source_dir(identity)
        try:
            self._extract(response.content, identity, destination)
        except (OSError, tarfile.TarError) as exc:
            raise DocBuilderError(
                code=ErrorCode.FETCH_FAILED,
                message=f"Failed to extract {identity}: {exc}",
                recoverable=True,
            ) from exc

        manifest = read_crate_manifest(destination)
        log.info(
            "fetch_complete",
            package=str(identity),
            url=url,
            content_length=len(response.content),
        )
        return FetchedPackage(
            identity=identity,
            source_dir=destination,
            manifest=manifest,
            primary_target=library_target_name(manifest, identity.name),
        )

    def _extract(self, archive: bytes, identity: PackageIdentity, destination: Path) -> None:
        """Unpack into a prefixed temp dir, then move the crate root into place.

        A crash between the two steps leaves only the temp dir behind, which
        the queue worker reclaims.
        """
        with tempfile.TemporaryDirectory(prefix=self._tempdir_prefix) as tmp:
            with tarfile.open(fileobj=io.BytesIO(archive), mode="r:gz") as tar:
                tar.extractall(tmp, filter="data")

            # .crate archives hold a single `<name>-<version>/` root
            crate_root = Path(tmp) / identity.canonical_name
            if not crate_root.is_dir():
                raise tarfile.TarError(f"archive has no {identity.canonical_name}/ root")

            if destination.exists():
                shutil.rmtree(destination)
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.move(str(crate_root), str(destination))
