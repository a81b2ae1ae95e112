"""Job runner that executes page tools from a job description."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import zipfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .document import A4, PageSize, page_size_from_name
from .output import OutputAllocator
from .page_index import END, parse_page_ranges
from .tools import PageTransformEngine, merge_documents

logger = logging.getLogger(__name__)

TOOLS = (
    "page-count",
    "delete-pages",
    "rotate",
    "reorder-pages",
    "move-page",
    "add-blank-page",
    "duplicate-page",
    "extract-pages",
    "split",
    "merge",
    "add-image-page",
    "add-image",
    "compress",
)


def _parse_int(value: Any, default: int) -> int:
    """Parse an integer with a safe fallback."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _require_int(config: Dict[str, Any], key: str) -> int:
    value = config.get(key)
    if isinstance(value, bool):
        raise ValueError(f"{key} must be a page number")
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise ValueError(f"{key} must be a page number") from error


def _parse_pages(value: Any) -> List[int]:
    """Accept either a range string ("1,3-5") or a list of page numbers."""
    if value is None:
        return []
    if isinstance(value, str):
        return parse_page_ranges(value)
    if isinstance(value, Iterable):
        return [_parse_int(item, 0) for item in value]
    raise ValueError("Pages must be a range string or a list of numbers")


def _parse_page_size(value: Any) -> PageSize:
    if value is None:
        return A4
    if isinstance(value, str):
        return page_size_from_name(value)
    try:
        width, height = value
        return PageSize(float(width), float(height))
    except (TypeError, ValueError) as error:
        raise ValueError("Page size must be a name or [width, height]") from error


def zip_outputs(outputs: Iterable[Path], zip_path: Path) -> Path:
    """Zip multiple output files into a single archive."""
    with zipfile.ZipFile(zip_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for item in outputs:
            archive.write(item, arcname=item.name)
    return zip_path


class PageWorker:
    """Run page tools described by job dictionaries."""

    def __init__(self, allocator: Optional[OutputAllocator] = None) -> None:
        self.allocator = allocator or OutputAllocator()

    def run_job(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """
        Execute a job and report its outcome instead of raising.

        A job looks like `{"tool": "rotate", "inputs": ["a.pdf"], "config": {...}}`.

        Returns:
            dict: `{"status": "success", "outputs": [...]}` on success, or
                  `{"status": "failed", "errorCode": ..., "errorMessage": ...}`.
        """
        job_id = job.get("id", "local")
        try:
            result = self._run_tool(job)
        except ValueError as error:
            return self._fail(job_id, "USER_INPUT_INVALID", str(error))
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s crashed", job_id)
            return self._fail(job_id, "PROCESSING_FAILED", "Processing failed. Please retry.", str(error))
        result["status"] = "success"
        logger.info("Job %s (%s) finished", job_id, job.get("tool"))
        return result

    def _fail(
        self,
        job_id: str,
        error_code: str,
        error_message: str,
        log_message: str | None = None,
    ) -> Dict[str, Any]:
        """Build a failure payload with a friendly error."""
        logger.warning("Job %s failed: %s", job_id, log_message or error_message)
        return {"status": "failed", "errorCode": error_code, "errorMessage": error_message}

    def _run_tool(self, job: Dict[str, Any]) -> Dict[str, Any]:
        """
        Dispatch a job to the matching page operation.

        Raises:
            ValueError: When the tool is unknown or its inputs or config are invalid.
        """
        tool = job.get("tool")
        if tool not in TOOLS:
            raise ValueError(f"Unsupported tool: {tool}")
        inputs = [Path(item) for item in job.get("inputs") or []]
        config = job.get("config")
        if not isinstance(config, dict):
            config = {}

        if tool == "merge":
            output = merge_documents(
                inputs,
                self.allocator.provider,
                config.get("name") or "document",
                self.allocator.clock,
            )
            return {"outputs": [str(output)]}

        if not inputs:
            raise ValueError("PDF file is required")
        engine = PageTransformEngine(inputs[0], self.allocator)

        if tool == "page-count":
            return {"outputs": [], "pageCount": engine.page_count()}
        if tool == "split":
            outputs = engine.split_all_pages()
            if config.get("archive") and outputs:
                zip_path = self.allocator.allocate(inputs[0], "split").with_suffix(".zip")
                return {"outputs": [str(zip_outputs(outputs, zip_path))]}
            return {"outputs": [str(path) for path in outputs]}
        return {"outputs": [str(self._run_single(tool, engine, config))]}

    def _run_single(self, tool: str, engine: PageTransformEngine, config: Dict[str, Any]) -> Path:
        if tool == "delete-pages":
            return engine.delete_pages(_parse_pages(config.get("pages")))
        if tool == "rotate":
            angle = _parse_int(config.get("angle"), 90)
            pages = config.get("pages")
            if pages is None:
                return engine.rotate_all_pages(angle)
            return engine.rotate_pages(_parse_pages(pages), angle)
        if tool == "reorder-pages":
            return engine.reorder_pages(_parse_pages(config.get("order")))
        if tool == "move-page":
            return engine.move_page(_require_int(config, "from"), _require_int(config, "to"))
        if tool == "add-blank-page":
            return engine.add_blank_page(
                _parse_int(config.get("after"), END), _parse_page_size(config.get("size"))
            )
        if tool == "duplicate-page":
            return engine.duplicate_page(_require_int(config, "page"))
        if tool == "extract-pages":
            return engine.extract_pages(_parse_pages(config.get("pages")))
        if tool == "compress":
            return engine.compress_pdf()

        image = config.get("image")
        if not image:
            raise ValueError("Image file is required")
        image = Path(image)
        if not image.is_file():
            raise ValueError(f"Image file not found: {image.name}")
        if tool == "add-image-page":
            return engine.add_image_as_page(image, _parse_int(config.get("after"), END))
        place = (
            engine.add_bitmap_to_page
            if config.get("origin") == "screen"
            else engine.add_image_to_page
        )
        return place(
            _require_int(config, "page"),
            image,
            float(config.get("x") or 0),
            float(config.get("y") or 0),
            float(config.get("width") or 0),
            float(config.get("height") or 0),
        )


def build_parser() -> argparse.ArgumentParser:
    """Build the command-line parser."""
    parser = argparse.ArgumentParser(
        prog="docpages-worker",
        description="Run a PDF page job described in a JSON file.",
    )
    parser.add_argument("job", type=Path, help="Path to the job JSON file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose logging (DEBUG)")
    return parser


def _log_level(verbose: bool) -> int:
    if verbose:
        return logging.DEBUG
    level = getattr(logging, os.environ.get("DOCPAGES_LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def main(argv: list[str] | None = None) -> int:
    """Entrypoint for the worker process."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=_log_level(args.verbose),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        job = json.loads(args.job.read_text(encoding="utf-8"))
    except (OSError, ValueError) as error:
        print(f"Error: cannot read job file {args.job}: {error}", file=sys.stderr)
        return 1
    if not isinstance(job, dict):
        print(f"Error: job file {args.job} must contain an object", file=sys.stderr)
        return 1
    result = PageWorker().run_job(job)
    print(json.dumps(result, indent=2))
    return 0 if result["status"] == "success" else 1


if __name__ == "__main__":
    sys.exit(main())
