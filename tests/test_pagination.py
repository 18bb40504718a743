"""
Tests for sap_gateway.odata.pagination.
"""

from itertools import islice

import pytest

from sap_gateway.odata.pagination import (
    PaginationConfig,
    PaginationResult,
    PaginationState,
    fetch_all_items,
    iter_pages,
    stream_all_items,
)


class FakeServer:
    """
    Serves scripted bodies to ``request_fn(query, uri)``.

    ``pages`` maps a next-link (or None for the first request) to a body;
    ``skip_pages`` maps a ``$skip`` value to a body.
    """

    def __init__(self, pages=None, skip_pages=None, fail_on=None):
        self.pages = pages or {}
        self.skip_pages = skip_pages or {}
        self.fail_on = fail_on
        self.calls = []

    def __call__(self, query, uri):
        self.calls.append((query, uri))
        if self.fail_on is not None and len(self.calls) == self.fail_on:
            raise RuntimeError("upstream failed: password=hunter2")
        if uri is not None:
            return self.pages[uri]
        skip = (query or {}).get("$skip")
        if skip is not None:
            return self.skip_pages[skip]
        return self.pages[None]


def v2(items, next_link=None):
    d = {"results": items}
    if next_link:
        d["__next"] = next_link
    return {"d": d}


def v4(items, next_link=None):
    body = {"value": items}
    if next_link:
        body["@odata.nextLink"] = next_link
    return body


class RowSource:
    """Serves ``rows`` by ``$skip``/``$top`` and never returns a next-link."""

    def __init__(self, rows):
        self.rows = rows
        self.calls = []

    def __call__(self, query, uri):
        self.calls.append((query, uri))
        skip = query.get("$skip", 0)
        return v4(self.rows[skip: skip + query["$top"]])


class TestFetchAll:
    """Tests for fetch_all_items."""

    def test_v2_next_links(self):
        server = FakeServer(pages={
            None: v2([1, 2], "p2"),
            "p2": v2([3, 4], "p3"),
            "p3": v2([5]),
        })
        assert fetch_all_items(server) == [1, 2, 3, 4, 5]
        assert server.calls[0] == ({"$top": 100}, None)
        assert [uri for _, uri in server.calls[1:]] == ["p2", "p3"]

    def test_v4_next_links(self):
        server = FakeServer(pages={None: v4([1], "n2"), "n2": v4([2])})
        assert fetch_all_items(server) == [1, 2]

    def test_skip_fallback(self):
        server = FakeServer(pages={None: v4([1, 2])}, skip_pages={2: v4([3])})
        assert fetch_all_items(server, PaginationConfig(page_size=2)) == [1, 2, 3]
        assert server.calls[1] == ({"$top": 2, "$skip": 2}, None)

    def test_skip_fallback_exact_multiple(self):
        server = FakeServer(pages={None: v4([1, 2])}, skip_pages={2: v4([])})
        assert fetch_all_items(server, PaginationConfig(page_size=2)) == [1, 2]
        assert len(server.calls) == 2

    def test_ignored_skip_capped_by_max_pages(self):
        server = FakeServer(pages={None: v4([1, 2])}, skip_pages={2: v4([1, 2]), 4: v4([1, 2])})
        result = fetch_all_items(server, PaginationConfig(page_size=2, max_pages=3))
        assert isinstance(result, PaginationResult)
        assert result.data == [1, 2, 1, 2, 1, 2]
        assert result.partial is True
        assert result.limit_reached is True
        assert "Stopped after 3 pages" in result.message
        assert len(server.calls) == 3

    def test_identical_rows_are_not_truncated(self):
        rows = [{"Status": "A"} for _ in range(25)]
        result = fetch_all_items(RowSource(rows), PaginationConfig(page_size=10))
        assert result == rows

    def test_caller_skip_starts_window(self):
        source = RowSource(list(range(100)))
        assert fetch_all_items(source, PaginationConfig(page_size=10, skip=80)) == list(range(80, 100))
        assert [q["$skip"] for q, _ in source.calls] == [80, 90, 100]

    def test_caller_top_stops_skip_fallback(self):
        source = RowSource(list(range(100)))
        assert fetch_all_items(source, PaginationConfig(page_size=10, top=10)) == list(range(10))
        assert source.calls == [({"$top": 10}, None)]

    def test_caller_top_and_skip_window(self):
        source = RowSource(list(range(100)))
        items = fetch_all_items(source, PaginationConfig(page_size=10, skip=5, top=25))
        assert items == list(range(5, 30))
        assert [q for q, _ in source.calls] == [
            {"$top": 10, "$skip": 5},
            {"$top": 10, "$skip": 15},
            {"$top": 5, "$skip": 25},
        ]

    def test_zero_top_makes_no_request(self):
        source = RowSource(list(range(10)))
        assert fetch_all_items(source, PaginationConfig(page_size=10, top=0)) == []
        assert source.calls == []

    def test_caller_top_truncates_linked_page(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3, 4], "p3")})
        assert fetch_all_items(server, PaginationConfig(page_size=2, top=3)) == [1, 2, 3]
        assert len(server.calls) == 2

    def test_repeated_next_link_stops(self):
        server = FakeServer(pages={None: v2([1], "loop"), "loop": v2([2], "loop")})
        assert fetch_all_items(server) == [1, 2]
        assert len(server.calls) == 2

    def test_property_name(self):
        server = FakeServer(pages={None: {"Orders": [{"id": 1}]}})
        assert fetch_all_items(server, PaginationConfig(property_name="Orders")) == [{"id": 1}]

    def test_max_items_truncates(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3, 4], "p3")})
        result = fetch_all_items(server, PaginationConfig(max_items=3))
        assert isinstance(result, PaginationResult)
        assert result.data == [1, 2, 3]
        assert result.partial is True
        assert result.limit_reached is True
        assert "Max items limit (3) reached" in result.message
        assert len(server.calls) == 2

    def test_max_items_exact_without_more(self):
        server = FakeServer(pages={None: v2([1, 2, 3])})
        assert fetch_all_items(server, PaginationConfig(max_items=3)) == [1, 2, 3]

    def test_error_propagates(self):
        server = FakeServer(pages={None: v2([1], "p2")}, fail_on=2)
        with pytest.raises(RuntimeError):
            fetch_all_items(server)

    def test_continue_on_fail(self):
        server = FakeServer(pages={None: v2([1, 2], "p2")}, fail_on=2)
        result = fetch_all_items(server, PaginationConfig(continue_on_fail=True))
        assert isinstance(result, PaginationResult)
        assert result.data == [1, 2]
        assert result.partial is True
        assert result.limit_reached is False
        assert len(result.errors) == 1
        error = result.errors[0]
        assert (error.page, error.items_fetched_so_far) == (2, 2)
        assert "hunter2" not in error.error
        assert result.message == "Fetched 2 items before encountering 1 error(s)"

    def test_result_to_dict(self):
        server = FakeServer(pages={None: v2([1], "p2")}, fail_on=2)
        out = fetch_all_items(server, PaginationConfig(continue_on_fail=True)).to_dict()
        assert out["partial"] is True
        assert out["limitReached"] is False
        assert out["errors"][0]["itemsFetchedSoFar"] == 1


class TestStreaming:
    """Tests for lazy iteration."""

    def test_stream_is_lazy(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3, 4])})
        assert list(islice(stream_all_items(server), 2)) == [1, 2]
        assert len(server.calls) == 1

    def test_stream_all(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3])})
        assert list(stream_all_items(server)) == [1, 2, 3]

    def test_stream_max_items(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3, 4], "p3")})
        assert list(stream_all_items(server, PaginationConfig(max_items=3))) == [1, 2, 3]
        assert len(server.calls) == 2

    def test_stream_error_after_items(self):
        server = FakeServer(pages={None: v2([1], "p2")}, fail_on=2)
        seen = []
        with pytest.raises(RuntimeError):
            for item in stream_all_items(server):
                seen.append(item)
        assert seen == [1]

    def test_iter_pages_state(self):
        server = FakeServer(pages={None: v2([1, 2], "p2"), "p2": v2([3])})
        state = PaginationState()
        assert list(iter_pages(server, PaginationConfig(), state)) == [[1, 2], [3]]
        assert state.items_fetched == 3
        assert state.page == 2
        assert state.has_more is False
