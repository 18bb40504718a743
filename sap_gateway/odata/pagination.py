"""
sap_gateway.odata.pagination - Collection paging
=================================================

Follows OData V2 ``__next`` / V4 ``@odata.nextLink`` links, falling back to
``$skip`` when a server returns a full page without a link.

The ``$skip`` fallback is best effort: a server that returns exactly one
full page and then nothing costs one extra (empty) request, and a server
that ignores ``$skip`` keeps returning full pages until ``max_pages`` stops
the read and flags the result partial.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generator, List, Optional, Union
import logging

from sap_gateway.core.config import DEFAULT_MAX_PAGES, DEFAULT_PAGE_SIZE
from sap_gateway.core.errors import sanitize_error_message
from sap_gateway.odata.envelope import extract_items, extract_next_link

logger = logging.getLogger("sap_gateway.pagination")

# request_fn(query, uri) -> decoded body; exactly one of the two is set
RequestFn = Callable[[Optional[Dict[str, Any]], Optional[str]], Any]


@dataclass
class PaginationConfig:
    """
    Parameters
    ----------
    property_name : str, optional
        Body property holding the items, checked before V2/V4 shapes
    continue_on_fail : bool
        Return what was fetched so far when a page fails
    max_items : int
        Stop after this many items (0 = no limit)
    page_size : int
        ``$top`` of each requested page and the "full page" threshold
    skip : int
        Offset of the first row (the caller's ``$skip``)
    top : int, optional
        Total rows wanted (the caller's ``$top``); paging stops once
        they are delivered
    max_pages : int
        Stop after this many requests (0 = no limit)
    """
    property_name: Optional[str] = None
    continue_on_fail: bool = False
    max_items: int = 0
    page_size: int = DEFAULT_PAGE_SIZE
    skip: int = 0
    top: Optional[int] = None
    max_pages: int = DEFAULT_MAX_PAGES


@dataclass
class PageError:
    page: int
    error: str
    items_fetched_so_far: int

    def to_dict(self) -> Dict[str, Any]:
        return {"page": self.page, "error": self.error, "itemsFetchedSoFar": self.items_fetched_so_far}


@dataclass
class PaginationResult:
    """Items plus what went wrong (or what was cut off) while paging."""
    data: List[Any]
    partial: bool = False
    limit_reached: bool = False
    errors: List[PageError] = field(default_factory=list)
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "partial": self.partial,
            "limitReached": self.limit_reached,
            "errors": [e.to_dict() for e in self.errors],
            "message": self.message,
        }


@dataclass
class PaginationState:
    next_link: Optional[str] = None
    current_skip: int = 0
    items_fetched: int = 0
    page: int = 1
    has_more: bool = True
    page_cap_reached: bool = False
    errors: List[PageError] = field(default_factory=list)


def iter_pages(
    request_fn: RequestFn,
    config: PaginationConfig,
    state: Optional[PaginationState] = None,
) -> Generator[List[Any], None, None]:
    """
    Yield one list of items per page; the traversal state lives in ``state``.

    ``$skip`` requests start at ``config.skip`` and advance by the rows
    received. ``max_items`` and ``continue_on_fail`` are not applied here.
    """
    state = state if state is not None else PaginationState()
    state.current_skip = config.skip
    seen_links = set()
    requests_made = 0
    if config.top == 0:
        state.has_more = False

    while state.has_more:
        if config.max_pages > 0 and requests_made >= config.max_pages:
            logger.warning("Stopped pagination after %s pages; more data may be available", requests_made)
            state.page_cap_reached = True
            state.has_more = False
            return

        remaining = None if config.top is None else config.top - state.items_fetched
        if state.next_link:
            requested = None
            body = request_fn(None, state.next_link)
        else:
            requested = config.page_size if remaining is None else min(config.page_size, remaining)
            query: Dict[str, Any] = {"$top": requested}
            if state.current_skip:
                query["$skip"] = state.current_skip
            body = request_fn(query, None)
        requests_made += 1

        items = extract_items(body, config.property_name)
        if remaining is not None and len(items) > remaining:
            items = items[:remaining]
        state.items_fetched += len(items)
        state.current_skip += len(items)

        next_link = extract_next_link(body)
        if config.top is not None and state.items_fetched >= config.top:
            state.has_more = False
        elif next_link:
            if next_link in seen_links:
                logger.warning("Next-link %s repeated; stopping pagination", next_link)
                state.has_more = False
            else:
                seen_links.add(next_link)
                state.next_link = next_link
                state.page += 1
        elif items and len(items) == (requested or config.page_size):
            state.next_link = None
            state.page += 1
            logger.debug(
                "No next link but full page - using $skip=%s (page %s)",
                state.current_skip, state.page,
            )
        else:
            state.has_more = False

        yield items


def fetch_all_items(
    request_fn: RequestFn,
    config: Optional[PaginationConfig] = None,
) -> Union[List[Any], PaginationResult]:
    """
    Fetch every page of a collection.

    Parameters
    ----------
    request_fn : callable
        ``request_fn(query, uri)``; called with ``(query, None)`` for the
        first/``$skip`` pages and ``(None, next_link)`` for linked pages
    config : PaginationConfig, optional
        Paging options

    Returns
    -------
    list or PaginationResult
        The plain item list, or a :class:`PaginationResult` when the item
        cap was hit or errors were tolerated

    Examples
    --------
    >>> items = fetch_all_items(
    ...     lambda query, uri: executor.execute(RequestConfig("GET", "A_SalesOrder", query=query, uri=uri)),
    ...     PaginationConfig(max_items=500),
    ... )
    """
    cfg = config or PaginationConfig()
    state = PaginationState()
    data: List[Any] = []
    limit_reached = False

    pages = iter_pages(request_fn, cfg, state)
    while True:
        try:
            items = next(pages)
        except StopIteration:
            break
        except Exception as e:
            if not cfg.continue_on_fail:
                raise
            message = sanitize_error_message(str(e))
            state.errors.append(PageError(state.page, message, len(data)))
            logger.warning(
                "Pagination error on page %s - continuing with %s items: %s",
                state.page, len(data), message,
            )
            break

        if cfg.max_items > 0 and len(data) + len(items) >= cfg.max_items:
            overflow = len(data) + len(items) > cfg.max_items
            data.extend(items[: cfg.max_items - len(data)])
            if overflow or state.has_more:
                limit_reached = True
                logger.info("Max items limit (%s) reached on page %s", cfg.max_items, state.page)
            pages.close()
            break

        data.extend(items)

    if (cfg.continue_on_fail and state.errors) or limit_reached or state.page_cap_reached:
        result = PaginationResult(data=data)
        if state.errors:
            result.errors = list(state.errors)
            result.partial = True
            result.message = f"Fetched {len(data)} items before encountering {len(state.errors)} error(s)"
        if limit_reached:
            result.partial = True
            result.limit_reached = True
            result.message = (
                f"{result.message}. Max items limit ({cfg.max_items}) reached."
                if result.message
                else f"Fetched {len(data)} items. Max items limit ({cfg.max_items}) reached - more data may be available."
            )
        elif state.page_cap_reached:
            result.partial = True
            result.limit_reached = True
            result.message = (
                f"Fetched {len(data)} items. Stopped after {cfg.max_pages} pages - more data may be available."
            )
        return result
    return data


def stream_all_items(
    request_fn: RequestFn,
    config: Optional[PaginationConfig] = None,
) -> Generator[Any, None, None]:
    """
    Lazily yield items page by page.

    No further page is requested once the consumer stops iterating. Page
    errors propagate to the consumer; items already yielded stay yielded.

    Examples
    --------
    >>> for order in stream_all_items(request_fn, PaginationConfig(max_items=1000)):
    ...     process(order)
    """
    cfg = config or PaginationConfig()
    state = PaginationState()
    emitted = 0
    for items in iter_pages(request_fn, cfg, state):
        for item in items:
            if cfg.max_items > 0 and emitted >= cfg.max_items:
                return
            yield item
            emitted += 1
        if cfg.max_items > 0 and emitted >= cfg.max_items:
            return
