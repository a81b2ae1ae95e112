"""Page operations that build new PDF documents from existing ones."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Union

import fitz
from pypdf import PageObject, PdfWriter

from .document import A4, DocumentHandle, PageSize
from .errors import EmptySelection, InvalidRotation, NoDocumentsToMerge
from .images import (
    EmbeddedImage,
    ImageSource,
    Placement,
    image_page,
    intrinsic_size,
    load_image,
    stamp_image,
    to_document_space,
)
from .output import OutputAllocator, OutputDirectoryProvider, discard, write_pdf
from .page_index import (
    END,
    move_order,
    resolve_insert_position,
    validate,
    validate_unique,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BlankPage:
    """Plan entry for an empty page of the given size."""

    size: PageSize


PlanEntry = Union[int, BlankPage, PageObject]
"""A source page number to copy, a blank page, or a ready-made page."""


def _check_rotation(degrees: int) -> int:
    if isinstance(degrees, bool) or not isinstance(degrees, int) or degrees % 90:
        raise InvalidRotation(
            f"Rotation must be a multiple of 90 degrees, got {degrees!r}", degrees=degrees
        )
    return degrees


def _check_page_size(page_size: Sequence[float]) -> PageSize:
    size = PageSize(*(float(side) for side in page_size))
    if size.width <= 0 or size.height <= 0:
        raise ValueError(f"Page size must be positive, got {tuple(page_size)}")
    return size


def _emit(source: DocumentHandle, plan: Iterable[PlanEntry], writer: PdfWriter) -> None:
    """Append every plan entry to the writer, in order."""
    for entry in plan:
        if isinstance(entry, BlankPage):
            writer.add_blank_page(width=entry.size.width, height=entry.size.height)
        elif isinstance(entry, PageObject):
            writer.add_page(entry)
        else:
            source.copy_range(entry, entry, writer)


def _assert_fitz_unencrypted(document: fitz.Document) -> None:
    """Raise if a PyMuPDF document is encrypted."""
    if document.is_encrypted:
        raise ValueError("PDF is encrypted")


class PageTransformEngine:
    """
    Page-level editing for one source PDF.

    Every operation reads `source_path` and writes a brand-new document through
    the allocator, returning its path. The source file is never modified.
    Reassign `source_path` to keep editing a document an operation produced.
    """

    def __init__(self, source_path: Path | str, allocator: Optional[OutputAllocator] = None) -> None:
        self.source_path = Path(source_path)
        self.allocator = allocator or OutputAllocator()

    def _open(self, writable: bool = False) -> DocumentHandle:
        return DocumentHandle.open(self.source_path, writable=writable)

    def _build(
        self,
        tag: str,
        plan_fn: Callable[[DocumentHandle], List[PlanEntry]],
        finish_fn: Optional[Callable[[PdfWriter], None]] = None,
    ) -> Path:
        """Open the source, plan the destination pages, and write them once."""
        with self._open() as source:
            plan = plan_fn(source)
            writer = PdfWriter()
            _emit(source, plan, writer)
            if finish_fn is not None:
                finish_fn(writer)
            source.copy_metadata(writer)
            output_path = self.allocator.allocate(self.source_path, tag)
            write_pdf(writer, output_path)
        logger.info(
            "%s: %s -> %s (%d pages)", tag, self.source_path.name, output_path, len(plan)
        )
        return output_path

    def page_count(self) -> int:
        """Return the number of pages in the source document."""
        with self._open() as source:
            return source.page_count

    def delete_pages(self, pages: Iterable[int]) -> Path:
        """
        Remove pages from the document.

        Parameters:
            pages (Iterable[int]): 1-based page numbers to drop. Repeats are harmless.

        Returns:
            Path: The new document holding every other page in original order.
                  Deleting every page yields a valid document with no pages.
        """
        selection = list(pages)

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            remove = set(validate(selection, source.page_count))
            return [index for index in range(1, source.page_count + 1) if index not in remove]

        return self._build("deleted", _plan)

    def rotate_pages(self, pages: Iterable[int], degrees: int) -> Path:
        """
        Add `degrees` to the rotation of each selected page.

        Rotation is a page attribute, so this rewrites page metadata on a cloned
        document rather than re-copying pages. Each page is rotated once even
        if it appears in `pages` more than once.
        """
        _check_rotation(degrees)
        selection = list(pages)
        with self._open(writable=True) as handle:
            targets = validate_unique(selection, handle.page_count)
            for index in targets:
                handle.set_rotation(index, handle.get_rotation(index) + degrees)
            output_path = self.allocator.allocate(self.source_path, "rotated")
            handle.save(output_path)
        logger.info(
            "rotated: %s -> %s (%d pages by %d degrees)",
            self.source_path.name,
            output_path,
            len(targets),
            degrees,
        )
        return output_path

    def rotate_all_pages(self, degrees: int) -> Path:
        """Rotate every page by `degrees`."""
        _check_rotation(degrees)
        return self.rotate_pages(range(1, self.page_count() + 1), degrees)

    def reorder_pages(self, order: Iterable[int]) -> Path:
        """
        Rebuild the document with pages in exactly the given sequence.

        Pages left out of `order` are dropped and repeated numbers produce
        repeated pages.
        """
        sequence = list(order)

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            return list(validate(sequence, source.page_count))

        return self._build("reordered", _plan)

    def move_page(self, from_page: int, to_page: int) -> Path:
        """Move one page so it ends up at position `to_page` (clamped to the document)."""
        order = move_order(from_page, to_page, self.page_count())
        return self.reorder_pages(order)

    def add_blank_page(self, after_page: int, page_size: Sequence[float] = A4) -> Path:
        """
        Insert one blank page.

        Parameters:
            after_page (int): Page to insert after; 0 for the start, -1 or any
                number past the last page for the end.
            page_size (Sequence[float]): Width and height in points.
        """
        size = _check_page_size(page_size)

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            plan: List[PlanEntry] = list(range(1, source.page_count + 1))
            plan.insert(resolve_insert_position(after_page, source.page_count), BlankPage(size))
            return plan

        return self._build("added", _plan)

    def duplicate_page(self, page_number: int) -> Path:
        """Copy every page, emitting `page_number` twice in a row."""

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            validate([page_number], source.page_count)
            plan: List[PlanEntry] = []
            for index in range(1, source.page_count + 1):
                plan.append(index)
                if index == page_number:
                    plan.append(index)
            return plan

        return self._build("duplicated", _plan)

    def extract_pages(self, pages: Iterable[int]) -> Path:
        """
        Copy the selected pages, in selection order, into a new document.

        Raises:
            EmptySelection: If no pages are selected.
            OutOfRange: If a page number is outside the document.
        """
        selection = list(pages)
        if not selection:
            raise EmptySelection("No pages selected for extraction")

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            return list(validate_unique(selection, source.page_count, require_pages=True))

        return self._build("extracted", _plan)

    def split_all_pages(self) -> List[Path]:
        """
        Write each page to its own single-page document.

        Pages are written one at a time. If any page fails, the files already
        written for this call are removed before the error propagates.
        """
        outputs: List[Path] = []
        with self._open() as source:
            try:
                for index in range(1, source.page_count + 1):
                    writer = PdfWriter()
                    source.copy_range(index, index, writer)
                    output_path = self.allocator.allocate(self.source_path, f"page_{index}")
                    write_pdf(writer, output_path)
                    outputs.append(output_path)
            except BaseException:
                for output_path in outputs:
                    discard(output_path)
                raise
        logger.info("split: %s -> %d documents", self.source_path.name, len(outputs))
        return outputs

    def add_image_as_page(self, image: ImageSource, after_page: int = END) -> Path:
        """
        Insert an image as a page of its own.

        The new page measures exactly the image's pixel width and height in
        points and is filled by the image. `after_page` follows the same rules
        as `add_blank_page`.
        """
        page = image_page(load_image(image))

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            plan: List[PlanEntry] = list(range(1, source.page_count + 1))
            plan.insert(resolve_insert_position(after_page, source.page_count), page)
            return plan

        return self._build("with_image", _plan)

    def _place_image(
        self,
        page_number: int,
        embedded: EmbeddedImage,
        placement_fn: Callable[[float], Placement],
    ) -> Path:

        def _plan(source: DocumentHandle) -> List[PlanEntry]:
            validate([page_number], source.page_count)
            return list(range(1, source.page_count + 1))

        def _finish(writer: PdfWriter) -> None:
            target = writer.pages[page_number - 1]
            placement = placement_fn(float(target.mediabox.height))
            stamp_image(target, embedded, placement)

        return self._build("image_added", _plan, _finish)

    def add_image_to_page(
        self,
        page_number: int,
        image: ImageSource,
        x: float,
        y: float,
        width: float = 0,
        height: float = 0,
    ) -> Path:
        """
        Paint an image onto an existing page.

        `x` and `y` give the lower-left corner of the image in document space.
        A zero `width` or `height` falls back to the image's pixel size.
        """
        embedded = load_image(image)
        image_width, image_height = intrinsic_size(embedded, width, height)
        return self._place_image(
            page_number,
            embedded,
            lambda _page_height: Placement(x, y, image_width, image_height),
        )

    def add_bitmap_to_page(
        self,
        page_number: int,
        bitmap: ImageSource,
        x: float,
        y: float,
        width: float = 0,
        height: float = 0,
    ) -> Path:
        """
        Paint an in-memory image onto a page using screen coordinates.

        `x` and `y` locate the image's top-left corner measured from the page's
        top-left corner, as a touch or view layer reports them.
        """
        embedded = load_image(bitmap)
        image_width, image_height = intrinsic_size(embedded, width, height)
        return self._place_image(
            page_number,
            embedded,
            lambda page_height: to_document_space(x, y, image_width, image_height, page_height),
        )

    def compress_pdf(self) -> Path:
        """Re-encode the document with maximum stream compression and unused objects removed."""
        page_count = self.page_count()
        output_path = self.allocator.allocate(self.source_path, "compressed")
        try:
            with fitz.open(str(self.source_path)) as document:
                _assert_fitz_unencrypted(document)
                document.save(
                    str(output_path),
                    garbage=4,
                    deflate=True,
                    deflate_images=True,
                    deflate_fonts=True,
                )
        except BaseException:
            discard(output_path)
            raise
        logger.info(
            "compressed: %s -> %s (%d pages, %d -> %d bytes)",
            self.source_path.name,
            output_path,
            page_count,
            self.source_path.stat().st_size,
            output_path.stat().st_size,
        )
        return output_path


def merge_documents(
    paths: Sequence[Path | str],
    provider: Optional[OutputDirectoryProvider] = None,
    output_name: str = "document",
    clock: Callable[[], datetime] = datetime.now,
) -> Path:
    """
    Merge multiple PDF files into a single PDF.

    Parameters:
        paths (Sequence[Path | str]): Source PDFs, appended whole in the given order.
        provider (OutputDirectoryProvider | None): Where the merged file goes;
            defaults to the DOCPAGES_OUTPUT_DIR location.
        output_name (str): Base name of the merged file. Directory parts are
            dropped, so the file always lands in the provider's directory.

    Returns:
        Path: `<dir>/<output_name>_merged_<timestamp>.pdf`.

    Raises:
        NoDocumentsToMerge: If `paths` is empty.
        DocumentUnreadable: If any source cannot be opened; nothing is written.
    """
    sources = list(paths)
    if not sources:
        raise NoDocumentsToMerge("No PDFs to merge")
    writer = PdfWriter()
    for path in sources:
        with DocumentHandle.open(path) as handle:
            if handle.page_count:
                handle.copy_range(1, handle.page_count, writer)
    name = Path(output_name).name or "document"
    output_path = OutputAllocator(provider, clock).allocate_named(name, "merged")
    write_pdf(writer, output_path)
    logger.info(
        "merged: %d documents -> %s (%d pages)", len(sources), output_path, len(writer.pages)
    )
    return output_path
