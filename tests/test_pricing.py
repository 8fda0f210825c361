"""Rate table and page selection tests"""

import pytest

from orders.models import ColorMode, PrintOptions
from orders.pricing import parse_page_selection, quote, selected_page_count


@pytest.mark.parametrize("selection,max_pages,expected", [
    ("1-3", 10, [1, 2, 3]),
    ("1-3, 5", 10, [1, 2, 3, 5]),
    ("5, 1-2, 2", 10, [1, 2, 5]),
    ("8-12", 10, [8, 9, 10]),
    ("0, 3", 10, [3]),
    ("a, 2, x-y", 10, [2]),
    ("", 10, []),
])
def test_parse_page_selection(selection, max_pages, expected):
    assert parse_page_selection(selection, max_pages) == expected


@pytest.mark.parametrize("selection,expected", [
    ("All Pages", 12),
    ("all", 12),
    ("", 12),
    ("Custom: 1-4", 4),
    ("2, 4, 6", 3),
])
def test_selected_page_count(selection, expected):
    assert selected_page_count(PrintOptions(page_selection=selection), 12) == expected


def test_black_and_white_quote():
    # 2 files of 5 and 5 pages, one copy, 1 per page
    assert quote(PrintOptions(), [5, 5]) == 10


def test_color_quote_uses_copies_and_rate():
    options = PrintOptions(copies=2, color_mode=ColorMode.COLOR, page_selection="Custom: 1-2")
    # 2 selected pages per file, 2 files, 2 copies, 3 per page
    assert quote(options, [10, 4]) == 24
