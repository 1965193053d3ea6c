from __future__ import annotations

from enum import StrEnum

import structlog

log = structlog.get_logger()


class ErrorCode(StrEnum):
    MANIFEST_NOT_FOUND = "MANIFEST_NOT_FOUND"
    MANIFEST_PARSE_FAILED = "MANIFEST_PARSE_FAILED"
    TOOLCHAIN_VERSION_INVALID = "TOOLCHAIN_VERSION_INVALID"
    TOOLCHAIN_UNAVAILABLE = "TOOLCHAIN_UNAVAILABLE"
    FETCH_FAILED = "FETCH_FAILED"
    INVALID_VERSION_REQUEST = "INVALID_VERSION_REQUEST"
    INVALID_PACKAGE = "INVALID_PACKAGE"
    STORAGE_FAILED = "STORAGE_FAILED"
    CLEANUP_FAILED = "CLEANUP_FAILED"
    QUEUE_FAILED = "QUEUE_FAILED"


class DocBuilderError(Exception):
    """Raised for all expected failure conditions of a build attempt.

    Propagates out of ``DocBuilder.build_package`` to the queue, which
    reports it and moves on to the next package. Anything that is *not* a
    DocBuilderError escaping a build is treated by the worker as a runtime
    fault and locks the queue.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        recoverable: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        return {
            "error": {
                "code": self.code,
                "message": self.message,
                "recoverable": self.recoverable,
            }
        }


class ToolchainVersionError(DocBuilderError):
    """A toolchain identification string did not have the expected shape."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(
            code=ErrorCode.TOOLCHAIN_VERSION_INVALID,
            message=f"Failed to parse toolchain version {raw!r}: {reason}",
            recoverable=False,
        )
        self.raw = raw
        self.reason = reason


def report_error(exc: BaseException, event: str, **context: object) -> None:
    """Log an error that the caller has decided not to propagate."""
    if isinstance(exc, DocBuilderError):
        context.setdefault("code", exc.code)
        context.setdefault("recoverable", exc.recoverable)
    log.error(event, error=str(exc), exc_info=exc, **context)
