"""Toolchain identification string parser.

Toolchains report themselves as ``<name> <version> (<commit-hash> <YYYY-MM-DD>)``,
for example ``rustc 1.10.0-nightly (57ef01513 2016-05-23)``. The canonical
tag used to name shared documentation assets is ``YYYYMMDD-<name>-<hash>``.
"""

from __future__ import annotations

from dataclasses import dataclass

from docbuilder.errors import ToolchainVersionError

_VERSION_PUNCTUATION = frozenset("-._+")


@dataclass(frozen=True)
class ToolchainVersion:
    name: str
    version: str
    commit_hash: str
    year: str
    month: str
    day: str

    @property
    def date(self) -> str:
        return f"{self.year}-{self.month}-{self.day}"

    def canonical(self) -> str:
        return f"{self.year}{self.month}{self.day}-{self.name}-{self.commit_hash}"


def _is_word(token: str) -> bool:
    return bool(token) and all(ch.isalnum() or ch == "_" for ch in token)


def _is_version(token: str) -> bool:
    return bool(token) and all(ch.isalnum() or ch in _VERSION_PUNCTUATION for ch in token)


def _split_date(raw: str, token: str) -> tuple[str, str, str]:
    parts = token.split("-")
    if len(parts) != 3:
        raise ToolchainVersionError(raw, f"date {token!r} is not YYYY-MM-DD")
    year, month, day = parts
    widths = (len(year), len(month), len(day))
    if widths != (4, 2, 2) or not all(p.isascii() and p.isdigit() for p in parts):
        raise ToolchainVersionError(raw, f"date {token!r} is not YYYY-MM-DD")
    return year, month, day


def parse_toolchain_version(raw: str) -> ToolchainVersion:
    """Parse a toolchain identification string.

    Raises ToolchainVersionError for anything that does not have exactly the
    shape ``name version (hash date)``.
    """
    text = raw.strip()

    head, sep, tail = text.partition(" (")
    if not sep:
        raise ToolchainVersionError(raw, "missing '(hash date)' suffix")
    if not tail.endswith(")"):
        raise ToolchainVersionError(raw, "unterminated '(hash date)' suffix")

    head_tokens = head.split()
    if len(head_tokens) != 2:
        raise ToolchainVersionError(raw, "expected '<name> <version>' before the suffix")
    name, version = head_tokens
    if not _is_version(name) or not _is_version(version):
        raise ToolchainVersionError(raw, "invalid characters in name or version")

    suffix_tokens = tail[:-1].split()
    if len(suffix_tokens) != 2:
        raise ToolchainVersionError(raw, "expected '(<hash> <date>)'")
    commit_hash, date = suffix_tokens
    if not _is_word(commit_hash):
        raise ToolchainVersionError(raw, f"invalid commit hash {commit_hash!r}")

    year, month, day = _split_date(raw, date)
    return ToolchainVersion(
        name=name,
        version=version,
        commit_hash=commit_hash,
        year=year,
        month=month,
        day=day,
    )


def canonical_version_tag(raw: str) -> str:
    """``"rustc 1.10.0-nightly (57ef01513 2016-05-23)"`` → ``"20160523-rustc-57ef01513"``."""
    return parse_toolchain_version(raw).canonical()
