"""
Per-page rate table and page-selection parsing.

The storefront computes the price it submits; these helpers let the server
produce its own quote for the same job when page counts are known.
"""

from typing import Iterable, List

from orders.models import ColorMode, PrintOptions

RATE_PER_PAGE = {
    ColorMode.BW: 1,
    ColorMode.COLOR: 3,
}

ALL_PAGES = "All Pages"
CUSTOM_PREFIX = "Custom:"


def parse_page_selection(selection: str, max_pages: int) -> List[int]:
    """
    Expand a selection such as "1-3, 5" into sorted page numbers, dropping
    pages outside 1..max_pages and anything that is not a number.
    """
    if not selection:
        return []

    pages = set()
    for part in selection.split(","):
        part = part.strip()
        if not part:
            continue
        if "-" in part:
            start, _, end = part.partition("-")
            try:
                first, last = int(start), int(end)
            except ValueError:
                continue
            pages.update(range(first, last + 1))
        else:
            try:
                pages.add(int(part))
            except ValueError:
                continue

    return sorted(p for p in pages if 1 <= p <= max_pages)


def selected_page_count(options: PrintOptions, num_pages: int) -> int:
    selection = options.page_selection.strip()
    if selection.lower() in ("", "all", ALL_PAGES.lower()):
        return num_pages
    if selection.startswith(CUSTOM_PREFIX):
        selection = selection[len(CUSTOM_PREFIX):]
    return len(parse_page_selection(selection, num_pages))


def quote(options: PrintOptions, page_counts: Iterable[int]) -> int:
    """Price of a job: selected pages across all files, times copies, times the rate."""
    total_pages = sum(selected_page_count(options, n) for n in page_counts)
    return total_pages * options.copies * RATE_PER_PAGE[options.color_mode]
