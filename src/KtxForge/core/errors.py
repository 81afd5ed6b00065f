"""Error taxonomy shared by every conversion stage.

Every failure carries the stage that raised it, the offending path (when
one exists) and an expected-vs-actual pair so callers can log a single
line that explains what went wrong without re-deriving context.
"""

from typing import Any, Optional


class TextureConversionError(RuntimeError):
    """Base class for failures that abort one conversion job."""

    def __init__(
        self,
        message: str,
        *,
        stage: Optional[str] = None,
        path: Optional[str] = None,
        expected: Any = None,
        actual: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.path = str(path) if path is not None else None
        self.expected = expected
        self.actual = actual

    def __str__(self) -> str:
        parts = []
        if self.stage:
            parts.append(f"[{self.stage}]")
        parts.append(self.message)
        if self.path:
            parts.append(f"(path={self.path})")
        if self.expected is not None or self.actual is not None:
            parts.append(f"expected={self.expected!r} actual={self.actual!r}")
        return " ".join(parts)

    def with_stage(self, stage: str) -> "TextureConversionError":
        """Attach *stage* if the raiser did not already set one."""
        if not self.stage:
            self.stage = stage
        return self


class InvalidDimensionError(TextureConversionError, ValueError):
    """Raised when an image plane has a zero or mismatched dimension."""


class MalformedContainerError(TextureConversionError):
    """Raised when a KTX2 container or metadata block cannot be parsed."""


class AlignmentError(TextureConversionError):
    """Raised when a container rewrite cannot keep required alignment."""


class ExternalToolFailureError(TextureConversionError):
    """Raised when the external block-compression tool fails."""

    def __init__(self, message: str, *, exit_code: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.exit_code = exit_code


class RangeOverflowError(TextureConversionError, ValueError):
    """Raised when a value does not fit the half-precision metadata encoding."""


class IOFailureError(TextureConversionError):
    """Raised when reading or writing a job file fails."""


class ConversionCancelledError(TextureConversionError):
    """Raised when a caller-requested cancellation is observed."""


class DegenerateRangeWarning(RuntimeWarning):
    """Emitted when a histogram range collapses and is clamped to an epsilon span."""
