"""Error types raised by page operations."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional


@dataclass
class PageOperationError(ValueError):
    """Base class for failures reported by the page engine."""

    message: str

    def __post_init__(self) -> None:
        """Initialize the base exception with the message."""
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message


@dataclass
class DocumentUnreadable(PageOperationError):
    """Raised when a source document is missing, corrupt, or encrypted."""

    path: Optional[Path] = None


@dataclass
class OutOfRange(PageOperationError):
    """Raised when a page index falls outside the document."""

    index: Any = None
    page_count: int = 0


@dataclass
class EmptySelection(PageOperationError):
    """Raised when an operation needs at least one page and got none."""


@dataclass
class NoDocumentsToMerge(PageOperationError):
    """Raised when merge is called without any source documents."""


@dataclass
class UnsupportedImageFormat(PageOperationError):
    """Raised when image data cannot be decoded."""


@dataclass
class InvalidRotation(PageOperationError):
    """Raised when a rotation is not a multiple of 90 degrees."""

    degrees: Any = None


def out_of_range(index: Any, page_count: int) -> OutOfRange:
    """Build an OutOfRange error with a readable message."""
    return OutOfRange(
        f"Page {index} is out of range (valid pages: 1-{page_count})",
        index=index,
        page_count=page_count,
    )
