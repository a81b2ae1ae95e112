"""Image decoding and placement onto PDF pages."""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Callable, NamedTuple, Tuple, Union

import img2pdf
from fpdf import FPDF
from PIL import Image
from pypdf import PageObject, PdfReader, Transformation

from .errors import UnsupportedImageFormat

ImageSource = Union[Path, str, bytes, bytearray, Image.Image]

PASSTHROUGH_JPEG_MODES = ("RGB", "L", "CMYK")


@dataclass(frozen=True)
class EmbeddedImage:
    """Encoded image data ready to be placed in a PDF, with its pixel size."""

    data: bytes
    width: int
    height: int
    format: str


class Placement(NamedTuple):
    """A rectangle in document space: origin bottom-left, units in points."""

    x: float
    y: float
    width: float
    height: float


def _flatten_alpha(image: Image.Image) -> Image.Image:
    rgba = image.convert("RGBA")
    background = Image.new("RGB", rgba.size, (255, 255, 255))
    background.paste(rgba, mask=rgba.getchannel("A"))
    return background


def _encode(image: Image.Image, raw: bytes | None) -> EmbeddedImage:
    width, height = image.size
    if raw is not None and image.format == "JPEG" and image.mode in PASSTHROUGH_JPEG_MODES:
        return EmbeddedImage(raw, width, height, "JPEG")
    if image.mode in ("RGBA", "LA", "PA") or "transparency" in image.info:
        image = _flatten_alpha(image)
    elif image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return EmbeddedImage(buffer.getvalue(), width, height, "PNG")


def load_image(source: ImageSource) -> EmbeddedImage:
    """
    Decode image data from a path, raw bytes, or an in-memory Pillow image.

    JPEG files are kept as-is; every other input is re-encoded as PNG with any
    transparency flattened onto white.

    Raises:
        UnsupportedImageFormat: If the data is not an image Pillow can decode.
    """
    if isinstance(source, Image.Image):
        if source.width < 1 or source.height < 1:
            raise UnsupportedImageFormat("Image has no pixels")
        return _encode(source, None)
    if isinstance(source, (bytes, bytearray)):
        raw = bytes(source)
    else:
        raw = Path(source).read_bytes()
    try:
        with Image.open(BytesIO(raw)) as image:
            image.load()
            return _encode(image, raw)
    except (OSError, SyntaxError, ValueError) as error:
        raise UnsupportedImageFormat("Image data could not be decoded") from error


def intrinsic_size(image: EmbeddedImage, width: float, height: float) -> Tuple[float, float]:
    """Return the requested size, replacing zero or negative sides with the pixel size."""
    return (
        float(width) if width > 0 else float(image.width),
        float(height) if height > 0 else float(image.height),
    )


def to_document_space(
    x: float, y: float, width: float, height: float, page_height: float
) -> Placement:
    """Convert a top-left-origin rectangle into document space."""
    return Placement(x, page_height - y - height, width, height)


def image_page(image: EmbeddedImage) -> PageObject:
    """Build a single page exactly the image's pixel size with the image filling it."""
    layout = img2pdf.get_fixed_dpi_layout_fun((72, 72))
    pdf_bytes = img2pdf.convert(image.data, layout_fun=layout)
    if pdf_bytes is None:
        raise UnsupportedImageFormat("Failed to render image to PDF")
    return PdfReader(BytesIO(pdf_bytes)).pages[0]


def _points_to_mm(points: float) -> float:
    return points * 25.4 / 72


def _build_overlay_page(
    width_points: float,
    height_points: float,
    draw_fn: Callable[[FPDF], None],
) -> PageObject:
    """Render a transparent single-page overlay of the given size with fpdf2."""
    pdf = FPDF(orientation="P", unit="mm", format=(_points_to_mm(width_points), _points_to_mm(height_points)))
    pdf.set_margins(0, 0, 0)
    pdf.set_auto_page_break(auto=False)
    pdf.add_page()
    draw_fn(pdf)
    overlay_reader = PdfReader(BytesIO(bytes(pdf.output())))
    return overlay_reader.pages[0]


def stamp_image(page: PageObject, image: EmbeddedImage, placement: Placement) -> PageObject:
    """
    Paint an image onto an existing page, stretched to fill `placement`.

    `placement` is measured from the lower-left corner of the page's media box.
    """
    box = page.mediabox
    page_width = float(box.width)
    page_height = float(box.height)
    # fpdf measures from the top edge
    top = page_height - placement.y - placement.height

    def _draw(pdf: FPDF) -> None:
        pdf.image(
            BytesIO(image.data),
            x=_points_to_mm(placement.x),
            y=_points_to_mm(top),
            w=_points_to_mm(placement.width),
            h=_points_to_mm(placement.height),
        )

    overlay = _build_overlay_page(page_width, page_height, _draw)
    page.merge_transformed_page(
        overlay, Transformation().translate(float(box.left), float(box.bottom))
    )
    return page
