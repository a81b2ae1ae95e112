"""Page number validation and arithmetic.

All page numbers handled here are 1-based. Nothing in this module touches the
filesystem; callers pass the page count of the document they opened.
"""

from __future__ import annotations

from typing import Iterable, List, Tuple

from .errors import EmptySelection, OutOfRange, out_of_range

END = -1
"""Insert position sentinel meaning "after the last page"."""


def _check_index(index: object, page_count: int) -> int:
    if isinstance(index, bool) or not isinstance(index, int):
        raise out_of_range(index, page_count)
    if index < 1 or index > page_count:
        raise out_of_range(index, page_count)
    return index


def validate(
    indices: Iterable[int],
    page_count: int,
    require_pages: bool = False,
) -> List[int]:
    """
    Check a page selection against a document's page count.

    Parameters:
        indices (Iterable[int]): 1-based page numbers; order and repeats are kept.
        page_count (int): Number of pages in the document the selection refers to.
        require_pages (bool): Reject an empty selection.

    Returns:
        list[int]: The selection, unchanged, as a list.

    Raises:
        EmptySelection: If `require_pages` is set and the selection is empty.
        OutOfRange: If any entry is not an integer within 1..page_count.
    """
    selection = list(indices)
    if require_pages and not selection:
        raise EmptySelection("No pages selected")
    return [_check_index(index, page_count) for index in selection]


def validate_unique(
    indices: Iterable[int],
    page_count: int,
    require_pages: bool = False,
) -> List[int]:
    """Validate a selection and drop repeated pages, keeping first occurrences."""
    seen: set[int] = set()
    unique: List[int] = []
    for index in validate(indices, page_count, require_pages):
        if index not in seen:
            seen.add(index)
            unique.append(index)
    return unique


def _parse_ranges(value: str) -> List[Tuple[int, int]]:
    """Parse a comma-separated list of page ranges without clamping."""
    ranges: List[Tuple[int, int]] = []
    for part in value.split(","):
        cleaned = part.strip()
        if not cleaned:
            continue
        if "-" in cleaned:
            start, end = cleaned.split("-", 1)
        else:
            start, end = cleaned, cleaned
        try:
            ranges.append((int(start), int(end)))
        except ValueError as error:
            raise ValueError(f"Invalid page range: {cleaned!r}") from error
    return ranges


def parse_page_ranges(value: str) -> List[int]:
    """
    Expand a page range string such as "1,3-5,7" into page numbers.

    Ranges written high-to-low ("5-3") expand in descending order, which lets a
    single string describe a reversed block. Range checks are left to `validate`.
    """
    pages: List[int] = []
    for start, end in _parse_ranges(str(value)):
        step = 1 if end >= start else -1
        pages.extend(range(start, end + step, step))
    return pages


def resolve_insert_position(after_page: int, page_count: int) -> int:
    """
    Translate an "insert after page" argument into a 0-based plan offset.

    0 inserts before the first page, END (-1) and anything past the last page
    insert after it. Other negative values are rejected.
    """
    if isinstance(after_page, bool) or not isinstance(after_page, int):
        raise out_of_range(after_page, page_count)
    if after_page == END:
        return page_count
    if after_page < 0:
        raise OutOfRange(
            f"Insert position {after_page} is invalid (use 0 for start, -1 for end)",
            index=after_page,
            page_count=page_count,
        )
    return min(after_page, page_count)


def move_order(from_page: int, to_page: int, page_count: int) -> List[int]:
    """
    Return the page order that moves `from_page` to final position `to_page`.

    `to_page` is clamped to 1..page_count. Once the moved page is taken out, the
    pages after it shift left by one, so inserting at `to_page - 1` in the
    shortened list lands it exactly at `to_page` in either direction.
    """
    _check_index(from_page, page_count)
    target = min(max(int(to_page), 1), page_count)
    order = [page for page in range(1, page_count + 1) if page != from_page]
    order.insert(target - 1, from_page)
    return order
