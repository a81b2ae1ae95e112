"""Output locations and writing for produced documents."""

from __future__ import annotations

import logging
import os
from datetime import datetime
from pathlib import Path
from typing import Callable, Protocol

from pypdf import PdfWriter

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
DEFAULT_OUTPUT_DIR = Path.home() / "Documents"


class OutputDirectoryProvider(Protocol):
    """Supplies the writable directory new documents are placed in."""

    def output_dir(self) -> Path:
        ...


class FixedDirectoryProvider:
    """Always returns the directory it was created with."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    def output_dir(self) -> Path:
        return self.path


class EnvironmentDirectoryProvider:
    """Reads the output directory from DOCPAGES_OUTPUT_DIR."""

    def output_dir(self) -> Path:
        value = os.environ.get("DOCPAGES_OUTPUT_DIR")
        if value:
            return Path(value).expanduser()
        return DEFAULT_OUTPUT_DIR


def _base_name(source_path: Path | str) -> str:
    name = Path(source_path).name
    if name.lower().endswith(".pdf"):
        name = name[:-4]
    return name or "document"


class OutputAllocator:
    """
    Derives output paths of the form `<dir>/<base>_<tag>_<yyyyMMdd_HHmmss>.pdf`.

    Two allocations with the same base and tag in the same second return the
    same path; the later write replaces the earlier file.
    """

    def __init__(
        self,
        provider: OutputDirectoryProvider | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.provider = provider or EnvironmentDirectoryProvider()
        self.clock = clock

    def _directory(self) -> Path:
        directory = Path(self.provider.output_dir())
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def allocate_named(self, name: str, tag: str) -> Path:
        """Return an output path for an explicit base name."""
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)
        return self._directory() / f"{name}_{tag}_{timestamp}.pdf"

    def allocate(self, source_path: Path | str, tag: str) -> Path:
        """Return an output path derived from a source document's name."""
        return self.allocate_named(_base_name(source_path), tag)


def discard(path: Path) -> None:
    """Remove a partially written output, ignoring files that never appeared."""
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as error:
        logger.warning("Could not remove partial output %s: %s", path, error)


def write_pdf(writer: PdfWriter, output_path: Path) -> Path:
    """Write a PDF to `output_path`, removing the file again if writing fails."""
    try:
        with output_path.open("wb") as handle:
            writer.write(handle)
    except BaseException:
        discard(output_path)
        raise
    return output_path
