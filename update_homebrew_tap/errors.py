"""
Failure taxonomy for the tap update pipeline.

Every error knows the pipeline stage it belongs to (the vocabulary the issue
reporter files failures under) and the exit code the CLI returns for it.
"""

import json
from dataclasses import asdict, dataclass
from typing import List, Optional


class TapUpdateError(Exception):
    """Base class for every pipeline failure."""

    stage = "unknown"
    exit_code = 1

    def __init__(self, message: str):
        super().__init__(message)
        self.detail = message
        self.outcome = None


class InvalidInput(TapUpdateError):
    """Malformed version, URL or checksum. Raised before any I/O."""

    stage = "payload-extraction"
    exit_code = 2

    def __init__(self, message: str, problems: Optional[List[str]] = None):
        super().__init__(message)
        self.problems = list(problems or [message])


class InvalidVersion(InvalidInput):
    pass


class InvalidURL(InvalidInput):
    pass


class InvalidChecksum(InvalidInput):
    pass


class DownloadFailed(TapUpdateError):
    stage = "binary-validation"
    exit_code = 3


class FileTooLarge(TapUpdateError):
    stage = "binary-validation"
    exit_code = 5

    def __init__(self, size: int, limit: int):
        super().__init__(
            f"File size ({size} bytes) exceeds maximum allowed size ({limit} bytes)"
        )
        self.size = size
        self.limit = limit


class ChecksumMismatch(TapUpdateError):
    stage = "binary-validation"
    exit_code = 5

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"SHA256 checksum mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class BackupFailed(TapUpdateError):
    stage = "formula-update"


class PatchFailed(TapUpdateError):
    stage = "formula-update"


class ValidationFailed(TapUpdateError):
    stage = "formula-validation"
    exit_code = 4

    def __init__(self, report):
        super().__init__(
            f"Formula validation failed with {report.defect_count} error(s): "
            + "; ".join(report.defects())
        )
        self.report = report


class CommitFailed(TapUpdateError):
    """The formula is updated and valid but could not be committed."""

    stage = "git-operations"
    exit_code = 6


class PushFailed(CommitFailed):
    """The commit exists locally; only the push is outstanding."""


@dataclass
class FailureReport:
    """The fields the issue reporter consumes for a failed run."""

    stage: str
    version: str
    error: str
    run_url: Optional[str] = None
    exit_code: int = 1

    @classmethod
    def from_error(cls, error: TapUpdateError, version: str, run_url: Optional[str] = None):
        return cls(
            stage=error.stage,
            version=version,
            error=error.detail,
            run_url=run_url,
            exit_code=error.exit_code,
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True)
