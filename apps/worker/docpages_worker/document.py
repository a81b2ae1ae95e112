"""Read and read-write sessions over PDF files."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import NamedTuple, Optional

from pypdf import PageObject, PdfReader, PdfWriter
from pypdf.errors import PyPdfError

from .errors import DocumentUnreadable, out_of_range
from .output import write_pdf

logger = logging.getLogger(__name__)


class PageSize(NamedTuple):
    """Page dimensions in PDF points."""

    width: float
    height: float


A3 = PageSize(842.0, 1191.0)
A4 = PageSize(595.0, 842.0)
A5 = PageSize(420.0, 595.0)
LETTER = PageSize(612.0, 792.0)
LEGAL = PageSize(612.0, 1008.0)

PAGE_SIZES = {"A3": A3, "A4": A4, "A5": A5, "LETTER": LETTER, "LEGAL": LEGAL}


def page_size_from_name(name: str) -> PageSize:
    """Look up a standard page size by name (case-insensitive)."""
    try:
        return PAGE_SIZES[name.strip().upper()]
    except KeyError as error:
        raise ValueError(f"Unknown page size: {name}") from error


class DocumentHandle:
    """
    A session over one PDF file.

    Read-only handles expose page data and can copy pages into a destination
    writer. Writable handles hold a cloned copy of the document whose page
    attributes can be changed and then saved to a different path; the source
    file itself is never written.
    """

    def __init__(self, path: Path, reader: PdfReader, writer: Optional[PdfWriter] = None) -> None:
        self.path = path
        self._reader: Optional[PdfReader] = reader
        self._writer = writer

    @classmethod
    def open(cls, path: Path | str, writable: bool = False) -> "DocumentHandle":
        """Open a PDF, raising DocumentUnreadable when it cannot be used."""
        path = Path(path)
        try:
            reader = PdfReader(str(path))
            if reader.is_encrypted:
                raise DocumentUnreadable("PDF is encrypted", path=path)
            len(reader.pages)
            writer = PdfWriter(clone_from=reader) if writable else None
        except FileNotFoundError as error:
            raise DocumentUnreadable(f"PDF not found: {path}", path=path) from error
        except (OSError, PyPdfError) as error:
            raise DocumentUnreadable(
                "PDF appears to be corrupted or unreadable.", path=path
            ) from error
        logger.debug("Opened %s (%s)", path, "read-write" if writable else "read-only")
        return cls(path, reader, writer)

    def __enter__(self) -> "DocumentHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        """Release the parsed document; safe to call more than once."""
        self._reader = None
        self._writer = None

    @property
    def closed(self) -> bool:
        return self._reader is None

    @property
    def writable(self) -> bool:
        return self._writer is not None

    @property
    def reader(self) -> PdfReader:
        if self._reader is None:
            raise RuntimeError(f"Document handle for {self.path} is closed")
        return self._reader

    @property
    def page_count(self) -> int:
        return len(self.reader.pages)

    def _page(self, index: int) -> PageObject:
        count = self.page_count
        if isinstance(index, bool) or not isinstance(index, int) or not 1 <= index <= count:
            raise out_of_range(index, count)
        if self._writer is not None:
            return self._writer.pages[index - 1]
        return self.reader.pages[index - 1]

    def get_rotation(self, index: int) -> int:
        """Return the rotation of a 1-based page in degrees."""
        return int(self._page(index).rotation) % 360

    def page_size(self, index: int) -> PageSize:
        """Return the unrotated media box size of a 1-based page."""
        mediabox = self._page(index).mediabox
        return PageSize(float(mediabox.width), float(mediabox.height))

    def copy_range(self, first: int, last: int, dest: PdfWriter) -> None:
        """
        Append pages `first`..`last` (inclusive, 1-based) to a destination writer.

        Page content and rotation travel with each page. The same page may be
        copied more than once; every copy becomes its own page in `dest`.
        """
        count = self.page_count
        for bound in (first, last):
            if isinstance(bound, bool) or not isinstance(bound, int) or not 1 <= bound <= count:
                raise out_of_range(bound, count)
        if first > last:
            raise out_of_range(first, count)
        for index in range(first, last + 1):
            dest.add_page(self.reader.pages[index - 1])

    def copy_metadata(self, dest: PdfWriter) -> None:
        """Copy document information from this handle into a writer."""
        metadata = self.reader.metadata or {}
        if metadata:
            dest.add_metadata(metadata)

    def set_rotation(self, index: int, degrees: int) -> None:
        """Set the absolute rotation of a page; writable handles only."""
        if self._writer is None:
            raise RuntimeError(f"Document handle for {self.path} is read-only")
        self._page(index).rotation = degrees % 360

    def save(self, output_path: Path) -> Path:
        """Write a writable handle's document to `output_path`."""
        if self._writer is None:
            raise RuntimeError(f"Document handle for {self.path} is read-only")
        return write_pdf(self._writer, output_path)
