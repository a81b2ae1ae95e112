import re
from datetime import datetime
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import List, Sequence

import fitz
import pytest
from PIL import Image
from pypdf import PdfReader, PdfWriter

from docpages_worker.document import A4, LETTER
from docpages_worker.errors import (
    DocumentUnreadable,
    EmptySelection,
    InvalidRotation,
    NoDocumentsToMerge,
    OutOfRange,
    UnsupportedImageFormat,
)
from docpages_worker.output import FixedDirectoryProvider, OutputAllocator
from docpages_worker.tools import PageTransformEngine, merge_documents


def _make_pdf(
    path: Path,
    pages: int,
    rotations: Sequence[int] | None = None,
    height: float = 300,
) -> Path:
    """Create a PDF whose page N is 200 + 10 * (N - 1) points wide."""
    writer = PdfWriter()
    for index in range(pages):
        page = writer.add_blank_page(width=200 + 10 * index, height=height)
        if rotations:
            page.rotation = rotations[index]
    with path.open("wb") as handle:
        writer.write(handle)
    return path


def _widths(path: Path) -> List[int]:
    """Identify pages by the width `_make_pdf` gave them."""
    return [round(float(page.mediabox.width)) for page in PdfReader(str(path)).pages]


def _rotations(path: Path) -> List[int]:
    return [page.rotation for page in PdfReader(str(path)).pages]


def _engine(temp_path: Path, pages: int = 5, **kwargs) -> PageTransformEngine:
    source = _make_pdf(temp_path / "source.pdf", pages, **kwargs)
    allocator = OutputAllocator(FixedDirectoryProvider(temp_path / "out"))
    return PageTransformEngine(source, allocator)


def _outputs(temp_path: Path) -> List[Path]:
    out = temp_path / "out"
    return sorted(out.iterdir()) if out.exists() else []


def _png(path: Path, size=(120, 80)) -> Path:
    Image.new("RGB", size, color=(120, 140, 180)).save(path)
    return path


def test_page_count() -> None:
    """Report the source page count."""
    with TemporaryDirectory() as temp:
        assert _engine(Path(temp), 4).page_count() == 4


def test_output_name_uses_source_tag_and_timestamp() -> None:
    """Name outputs <base>_<tag>_<yyyyMMdd_HHmmss>.pdf next to each other."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        output = _engine(temp_path).delete_pages([1])
        assert output.parent == temp_path / "out"
        assert re.fullmatch(r"source_deleted_\d{8}_\d{6}\.pdf", output.name)


def test_delete_pages() -> None:
    """Delete selected pages and keep the rest in order."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path)
        output = engine.delete_pages([2, 4, 2])
        assert _widths(output) == [200, 220, 240]
        assert _widths(engine.source_path) == [200, 210, 220, 230, 240]


def test_delete_all_pages_yields_empty_document() -> None:
    """Deleting every page still writes a valid document."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp), 3).delete_pages([1, 2, 3])
        assert len(PdfReader(str(output)).pages) == 0


def test_delete_out_of_range_writes_nothing() -> None:
    """Reject bad page numbers before any output exists."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        with pytest.raises(OutOfRange) as excinfo:
            _engine(temp_path).delete_pages([1, 6])
        assert excinfo.value.index == 6
        assert excinfo.value.page_count == 5
        assert _outputs(temp_path) == []


def test_delete_and_extract_page_counts_complement() -> None:
    """Delete and extract of the same subset split the page count."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 6)
        subset = [5, 2, 3]
        assert len(PdfReader(str(engine.delete_pages(subset))).pages) == 3
        assert len(PdfReader(str(engine.extract_pages(subset))).pages) == 3


def test_extract_pages_keeps_selection_order() -> None:
    """Extract pages in the order given, dropping repeats."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp)).extract_pages([4, 2, 4])
        assert _widths(output) == [230, 210]


def test_extract_pages_empty_selection() -> None:
    """Refuse to extract nothing."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        with pytest.raises(EmptySelection):
            _engine(temp_path).extract_pages([])
        assert _outputs(temp_path) == []


def test_rotate_pages_adds_to_current_rotation() -> None:
    """Rotate selected pages relative to their current rotation."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 3, rotations=[0, 0, 270])
        output = engine.rotate_pages([1, 3], 90)
        assert _rotations(output) == [90, 0, 0]
        assert _rotations(engine.source_path) == [0, 0, 270]


def test_rotate_pages_full_turn_is_identity() -> None:
    """Rotating by 360 degrees leaves rotation unchanged."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 3, rotations=[0, 90, 180])
        output = engine.rotate_pages([1, 2, 3], 360)
        assert _rotations(output) == [0, 90, 180]


def test_rotate_all_pages_counter_clockwise() -> None:
    """Negative rotations wrap into 0-359."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp), 3, rotations=[0, 90, 180]).rotate_all_pages(-90)
        assert _rotations(output) == [270, 0, 90]
        assert _widths(output) == [200, 210, 220]


def test_rotate_rejects_partial_turns() -> None:
    """Only multiples of 90 degrees are accepted."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        with pytest.raises(InvalidRotation):
            _engine(temp_path).rotate_pages([1], 45)
        assert _outputs(temp_path) == []


def test_reorder_identity_preserves_pages() -> None:
    """The identity order reproduces page count and rotation."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 4, rotations=[0, 90, 180, 270])
        output = engine.reorder_pages([1, 2, 3, 4])
        assert _widths(output) == [200, 210, 220, 230]
        assert _rotations(output) == [0, 90, 180, 270]


def test_reorder_drops_and_repeats_pages() -> None:
    """Omitted pages disappear and repeated pages are copied again."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp)).reorder_pages([3, 1, 1])
        assert _widths(output) == [220, 200, 200]


def test_reorder_out_of_range() -> None:
    """Reject page numbers outside the document."""
    with TemporaryDirectory() as temp:
        with pytest.raises(OutOfRange):
            _engine(Path(temp)).reorder_pages([0, 1])


def test_move_page_forward_and_back() -> None:
    """Move the first page to the end and the last page to the front."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp))
        assert _widths(engine.move_page(1, 5)) == [210, 220, 230, 240, 200]
        assert _widths(engine.move_page(5, 1)) == [240, 200, 210, 220, 230]


def test_move_page_clamps_target() -> None:
    """Targets past the end land on the last position."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp), 3).move_page(2, 10)
        assert _widths(output) == [200, 220, 210]


def test_add_blank_page_at_start() -> None:
    """Insert a blank A4 page before the first page."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp), 3).add_blank_page(0, A4)
        reader = PdfReader(str(output))
        assert len(reader.pages) == 4
        first = reader.pages[0]
        assert (float(first.mediabox.width), float(first.mediabox.height)) == (595, 842)
        assert first.get_contents() is None
        assert _widths(output)[1:] == [200, 210, 220]


def test_add_blank_page_positions() -> None:
    """Insert after a given page, at the end, or past the end."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 3)
        assert _widths(engine.add_blank_page(2, LETTER)) == [200, 210, 612, 220]
        assert _widths(engine.add_blank_page(-1, LETTER)) == [200, 210, 220, 612]
        assert _widths(engine.add_blank_page(99, LETTER)) == [200, 210, 220, 612]


def test_add_blank_page_rejects_negative_position() -> None:
    """Only -1 is a valid negative position."""
    with TemporaryDirectory() as temp:
        with pytest.raises(OutOfRange):
            _engine(Path(temp), 3).add_blank_page(-2)


def test_duplicate_page() -> None:
    """Duplicate a page right after the original."""
    with TemporaryDirectory() as temp:
        output = _engine(Path(temp), 3, rotations=[0, 90, 0]).duplicate_page(2)
        assert _widths(output) == [200, 210, 210, 220]
        assert _rotations(output) == [0, 90, 90, 0]


def test_duplicate_page_out_of_range() -> None:
    """Reject duplicating a page that does not exist."""
    with TemporaryDirectory() as temp:
        with pytest.raises(OutOfRange):
            _engine(Path(temp), 3).duplicate_page(4)


def test_split_all_pages() -> None:
    """Split into one document per page."""
    with TemporaryDirectory() as temp:
        outputs = _engine(Path(temp), 3).split_all_pages()
        assert len(outputs) == 3
        assert [_widths(path) for path in outputs] == [[200], [210], [220]]
        assert outputs[0].name.startswith("source_page_1_")


def test_merge_documents() -> None:
    """Merge multiple PDFs into one output."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        first = _make_pdf(temp_path / "first.pdf", 1)
        second = _make_pdf(temp_path / "second.pdf", 2, rotations=[90, 0])

        output = merge_documents(
            [first, second], FixedDirectoryProvider(temp_path / "out"), "bundle"
        )
        assert _widths(output) == [200, 200, 210]
        assert _rotations(output) == [0, 90, 0]
        assert output.name.startswith("bundle_merged_")


def test_merge_documents_requires_inputs() -> None:
    """Refuse to merge an empty list."""
    with TemporaryDirectory() as temp:
        with pytest.raises(NoDocumentsToMerge):
            merge_documents([], FixedDirectoryProvider(Path(temp)))


def test_merge_documents_strips_directories_from_name() -> None:
    """The merged file is always written inside the provider directory."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        first = _make_pdf(temp_path / "first.pdf", 1)
        out = temp_path / "nested" / "out"
        output = merge_documents([first], FixedDirectoryProvider(out), "../../bundle")
        assert output.parent == out
        assert output.name.startswith("bundle_merged_")


def test_merge_documents_unreadable_source() -> None:
    """Fail on an unreadable source without writing output."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        first = _make_pdf(temp_path / "first.pdf", 1)
        broken = temp_path / "broken.pdf"
        broken.write_bytes(b"not a pdf")
        with pytest.raises(DocumentUnreadable):
            merge_documents([first, broken], FixedDirectoryProvider(temp_path / "out"))
        assert _outputs(temp_path) == []


def test_missing_source_is_unreadable() -> None:
    """Opening a missing file fails with DocumentUnreadable."""
    with TemporaryDirectory() as temp:
        engine = PageTransformEngine(Path(temp) / "missing.pdf")
        with pytest.raises(DocumentUnreadable):
            engine.page_count()


def test_add_image_as_page() -> None:
    """Insert an image page sized to the image's pixels."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path, 2)
        image_path = _png(temp_path / "photo.png")

        first = engine.add_image_as_page(image_path, 0)
        assert _widths(first) == [120, 200, 210]
        page = PdfReader(str(first)).pages[0]
        assert round(float(page.mediabox.height)) == 80
        assert len(page.images) == 1

        last = engine.add_image_as_page(image_path.read_bytes())
        assert _widths(last) == [200, 210, 120]


def test_add_image_as_page_rejects_non_images() -> None:
    """Undecodable image data fails before anything is written."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        with pytest.raises(UnsupportedImageFormat):
            _engine(temp_path, 2).add_image_as_page(b"definitely not an image")
        assert _outputs(temp_path) == []


def _image_bbox(path: Path, page_index: int):
    with fitz.open(str(path)) as document:
        infos = document[page_index].get_image_info()
    assert len(infos) == 1
    return infos[0]["bbox"]


def test_add_image_to_page_uses_document_coordinates() -> None:
    """Place an image measured from the bottom-left corner."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path, 2, height=800)
        image_path = _png(temp_path / "stamp.png", size=(40, 30))

        output = engine.add_image_to_page(2, image_path, 10, 20)
        x0, y0, x1, y1 = _image_bbox(output, 1)
        # PyMuPDF reports top-left based coordinates
        assert (x0, y0, x1, y1) == pytest.approx((10, 750, 50, 780), abs=0.5)
        assert _widths(output) == [200, 210]


def test_add_image_to_page_scales_to_requested_size() -> None:
    """Stretch the image into an explicit rectangle."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path, 1, height=800)
        image_path = _png(temp_path / "stamp.png", size=(40, 30))

        output = engine.add_image_to_page(1, image_path, 0, 0, 100, 60)
        assert _image_bbox(output, 0) == pytest.approx((0, 740, 100, 800), abs=0.5)


def test_add_bitmap_to_page_flips_screen_coordinates() -> None:
    """Screen (10, 20) on an 800pt page lands at document y = 800 - 20 - height."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path, 1, height=800)
        bitmap = Image.new("RGBA", (40, 30), color=(255, 0, 0, 128))

        output = engine.add_bitmap_to_page(1, bitmap, 10, 20)
        # document y 750 from the bottom is 20 from the top
        assert _image_bbox(output, 0) == pytest.approx((10, 20, 50, 50), abs=0.5)


def test_add_image_to_page_out_of_range() -> None:
    """Reject placing an image on a missing page."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        image_path = _png(temp_path / "stamp.png")
        with pytest.raises(OutOfRange):
            _engine(temp_path, 2).add_image_to_page(3, image_path, 0, 0)


def test_compress_pdf_keeps_pages() -> None:
    """Compression keeps page order and count."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 3, rotations=[0, 180, 0])
        output = engine.compress_pdf()
        assert output.name.startswith("source_compressed_")
        assert _widths(output) == [200, 210, 220]
        assert _rotations(output) == [0, 180, 0]


def _make_text_pdf(path: Path, pages: int = 3) -> Path:
    """Create a PDF whose page content streams are stored uncompressed."""
    with fitz.open() as document:
        for _ in range(pages):
            page = document.new_page(width=400, height=600)
            for line in range(40):
                page.insert_text((20, 20 + line * 14), "uncompressed page content " * 3, fontsize=8)
        document.save(str(path), deflate=False)
    return path


def test_compress_pdf_deflates_content_streams() -> None:
    """Content streams come out Flate encoded and the file shrinks."""
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_text_pdf(temp_path / "source.pdf")
        allocator = OutputAllocator(FixedDirectoryProvider(temp_path / "out"))
        output = PageTransformEngine(source, allocator).compress_pdf()

        assert output.stat().st_size < source.stat().st_size
        with fitz.open(str(output)) as document:
            assert document.page_count == 3
            for page in document:
                for xref in page.get_contents():
                    assert document.xref_get_key(xref, "Filter") == ("name", "/FlateDecode")


def test_compress_pdf_failure_removes_output(monkeypatch: pytest.MonkeyPatch) -> None:
    """A save that fails midway leaves no output behind."""

    def _failing_save(self, filename, *args, **kwargs):
        Path(filename).write_bytes(b"%PDF-1.7\n")
        raise RuntimeError("disk full")

    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        engine = _engine(temp_path, 2)
        monkeypatch.setattr(fitz.Document, "save", _failing_save)
        with pytest.raises(RuntimeError, match="disk full"):
            engine.compress_pdf()
        assert _outputs(temp_path) == []


def test_split_all_pages_failure_removes_written_pages() -> None:
    """Pages already written are removed when a later page cannot be written."""
    frozen = datetime(2024, 3, 9, 14, 5, 7)
    with TemporaryDirectory() as temp:
        temp_path = Path(temp)
        source = _make_pdf(temp_path / "source.pdf", 3)
        out = temp_path / "out"
        blocked = out / "source_page_2_20240309_140507.pdf"
        blocked.mkdir(parents=True)
        allocator = OutputAllocator(FixedDirectoryProvider(out), clock=lambda: frozen)

        with pytest.raises(OSError):
            PageTransformEngine(source, allocator).split_all_pages()
        assert _outputs(temp_path) == [blocked]


def test_chained_edits_follow_source_path() -> None:
    """Continue editing a produced document by moving the source path."""
    with TemporaryDirectory() as temp:
        engine = _engine(Path(temp), 3)
        engine.source_path = engine.delete_pages([1])
        output = engine.duplicate_page(1)
        assert _widths(output) == [210, 210, 220]
