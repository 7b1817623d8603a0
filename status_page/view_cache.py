"""Generation-stamped cache of rendered pages.

Every poll cycle produces a new generation. ``advance_cycle`` renders the
default view and the recently requested views against the freshly committed
data, then swaps the whole table in one step, so a reader sees either the old
generation with its entries or the new generation with its entries, never a
new generation number over an empty or stale table.

Readers never take a lock: they read the current table reference once. The
single write lock only serialises backfills and the cycle swap, and every
backfill re-checks the generation before inserting.
"""

from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable

import structlog

from status_page.ui_state import DEFAULT_SELECTOR, DEFAULT_UI, UiState


logger = structlog.get_logger(__name__)

RECENT_CAPACITY = 3

# (ui_state, refresh_secs) -> rendered page
RenderFn = Callable[[UiState, int], bytes]
# (rendered page, refresh_secs) -> page with its refresh hint rewritten
RetargetFn = Callable[[bytes, int], bytes]


def make_etag(generation: int, selector: str) -> str:
    return f'"{int(generation)}-{selector}"'


def effective_refresh(poll_interval_secs: int, render_seconds: int) -> int:
    """Advertised client refresh: shrink the poll interval by a render that took a second or more."""
    p = int(poll_interval_secs)
    r = int(render_seconds)
    if r >= 1:
        return max(1, p - r)
    return p


@dataclass(frozen=True)
class Served:
    generation: int
    selector: str
    body: bytes
    hit: bool

    @property
    def etag(self) -> str:
        return make_etag(self.generation, self.selector)


@dataclass
class _Table:
    generation: int
    entries: dict[str, bytes] = field(default_factory=dict)


class RecencySet:
    """Bounded set of selectors seen on cache misses, least recently missed evicted first."""

    def __init__(self, capacity: int = RECENT_CAPACITY) -> None:
        self.capacity = max(0, int(capacity))
        self._lock = threading.Lock()
        self._items: OrderedDict[str, UiState] = OrderedDict()

    def touch(self, selector: str, ui: UiState) -> None:
        if self.capacity <= 0:
            return
        with self._lock:
            self._items.pop(selector, None)
            self._items[selector] = ui
            while len(self._items) > self.capacity:
                self._items.popitem(last=False)

    def items(self) -> list[tuple[str, UiState]]:
        with self._lock:
            return list(self._items.items())

    def __contains__(self, selector: object) -> bool:
        with self._lock:
            return selector in self._items

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)


class ViewCache:
    def __init__(
        self,
        render: RenderFn,
        *,
        poll_interval_secs: int,
        retarget: RetargetFn | None = None,
        recent_capacity: int = RECENT_CAPACITY,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._render = render
        self._retarget = retarget
        self._clock = clock
        self.poll_interval_secs = max(1, int(poll_interval_secs))
        self.recent = RecencySet(recent_capacity)

        self._lock = threading.Lock()
        self._table = _Table(generation=0)
        self._effective_refresh_secs = self.poll_interval_secs

    @property
    def generation(self) -> int:
        return self._table.generation

    @property
    def effective_refresh_secs(self) -> int:
        return self._effective_refresh_secs

    def etag_for(self, selector: str) -> str:
        return make_etag(self._table.generation, selector)

    def cached(self, selector: str) -> bytes | None:
        return self._table.entries.get(selector)

    def prime(self) -> None:
        """Startup render of the default view under generation 0."""
        body = self._render(DEFAULT_UI, self._effective_refresh_secs)
        with self._lock:
            self._table.entries.setdefault(DEFAULT_SELECTOR, body)

    def serve(self, ui: UiState) -> Served:
        selector = ui.selector
        table = self._table
        body = table.entries.get(selector)
        if body is not None:
            return Served(generation=table.generation, selector=selector, body=body, hit=True)

        generation = table.generation
        body = self._render(ui, self._effective_refresh_secs)

        with self._lock:
            current = self._table
            # A newer generation may have been published while rendering; then this body is stale.
            if current.generation == generation and selector not in current.entries:
                current.entries[selector] = body

        if not ui.is_default:
            self.recent.touch(selector, ui)
        logger.debug("Rendered on miss", generation=generation, selector=selector, recent=len(self.recent))
        return Served(generation=generation, selector=selector, body=body, hit=False)

    def advance_cycle(self) -> int:
        """Render default and recent views for the new data, then publish the next generation."""
        previous_refresh = self._effective_refresh_secs
        started = self._clock()
        default_body = self._render(DEFAULT_UI, previous_refresh)
        render_seconds = int(self._clock() - started)

        refresh = effective_refresh(self.poll_interval_secs, render_seconds)
        if refresh != previous_refresh and self._retarget is not None:
            default_body = self._retarget(default_body, refresh)
        self._effective_refresh_secs = refresh

        entries: dict[str, bytes] = {DEFAULT_SELECTOR: default_body}
        for selector, ui in self.recent.items():
            try:
                entries[selector] = self._render(ui, refresh)
            except Exception as exc:
                # Only this view goes cold; it will be rendered on its next request.
                logger.exception("Pre-render failed", selector=selector, error=f"{type(exc).__name__}: {exc}")

        with self._lock:
            generation = self._table.generation + 1
            self._table = _Table(generation=generation, entries=entries)

        logger.info(
            "Views advanced",
            generation=generation,
            prerendered=len(entries),
            render_seconds=render_seconds,
            effective_refresh_secs=refresh,
        )
        return generation
