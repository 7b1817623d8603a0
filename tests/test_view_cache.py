from __future__ import annotations

import pytest

from status_page.ui_state import DEFAULT_SELECTOR, DEFAULT_UI, UiState, parse_pg_value
from status_page.view_cache import RecencySet, ViewCache, effective_refresh, make_etag


class CountingRender:
    def __init__(self) -> None:
        self.calls: list[tuple[str, int]] = []
        self.version = 0

    def __call__(self, ui: UiState, refresh_secs: int) -> bytes:
        self.calls.append((ui.selector, refresh_secs))
        return f"v{self.version}:{ui.canonical()}:{refresh_secs}".encode()


def _ui(hosts: str) -> UiState:
    return parse_pg_value(f"ho={hosts}")


@pytest.mark.parametrize(
    "poll,render_secs,expected",
    [(30, 0, 30), (30, 1, 29), (30, 5, 25), (3, 10, 1), (1, 1, 1), (10, 9, 1)],
)
def test_effective_refresh(poll: int, render_secs: int, expected: int) -> None:
    assert effective_refresh(poll, render_secs) == expected


def test_etag_format() -> None:
    assert make_etag(7, "abc") == '"7-abc"'


def test_prime_serves_default_at_generation_zero() -> None:
    render = CountingRender()
    cache = ViewCache(render, poll_interval_secs=30)
    cache.prime()

    served = cache.serve(DEFAULT_UI)
    assert served.hit is True
    assert served.generation == 0
    assert served.etag == f'"0-{DEFAULT_SELECTOR}"'
    assert len(render.calls) == 1


def test_advance_publishes_default_before_generation() -> None:
    render = CountingRender()
    cache = ViewCache(render, poll_interval_secs=30)
    cache.prime()

    render.version = 1
    assert cache.advance_cycle() == 1

    served = cache.serve(DEFAULT_UI)
    assert served.hit is True
    assert served.body.startswith(b"v1:")
    assert served.etag == f'"1-{DEFAULT_SELECTOR}"'


def test_miss_is_cached_and_remembered() -> None:
    render = CountingRender()
    cache = ViewCache(render, poll_interval_secs=30)
    ui = _ui("10.0.0.1")

    first = cache.serve(ui)
    second = cache.serve(ui)

    assert first.hit is False and second.hit is True
    assert first.body == second.body
    assert ui.selector in cache.recent
    assert render.calls.count((ui.selector, 30)) == 1


def test_default_view_is_not_tracked_as_recent() -> None:
    cache = ViewCache(CountingRender(), poll_interval_secs=30)
    cache.serve(DEFAULT_UI)
    assert len(cache.recent) == 0


def test_recent_views_are_prerendered_each_cycle() -> None:
    render = CountingRender()
    cache = ViewCache(render, poll_interval_secs=30)
    views = [_ui(h) for h in ("a", "b", "c", "d")]
    for ui in views:
        cache.serve(ui)

    # Capacity 3: the least recently missed view was dropped.
    assert views[0].selector not in cache.recent
    render.calls.clear()
    cache.advance_cycle()

    rendered = {sel for sel, _ in render.calls}
    assert rendered == {DEFAULT_SELECTOR} | {ui.selector for ui in views[1:]}
    for ui in views[1:]:
        assert cache.serve(ui).hit is True
    assert cache.serve(views[0]).hit is False


def test_recency_set_eviction_order() -> None:
    recent = RecencySet(capacity=3)
    for sel in ("a", "b", "c"):
        recent.touch(sel, DEFAULT_UI)
    recent.touch("a", DEFAULT_UI)
    recent.touch("d", DEFAULT_UI)
    assert [sel for sel, _ in recent.items()] == ["c", "a", "d"]


def test_backfill_from_older_generation_is_discarded() -> None:
    ui = _ui("10.0.0.1")
    holder: dict[str, ViewCache] = {}
    state = {"advanced": False}

    def render(view: UiState, refresh_secs: int) -> bytes:
        if view.selector == ui.selector and not state["advanced"]:
            # A cycle completes while this miss is still rendering.
            state["advanced"] = True
            holder["cache"].advance_cycle()
        return view.canonical().encode() or b"default"

    cache = ViewCache(render, poll_interval_secs=30)
    holder["cache"] = cache

    served = cache.serve(ui)

    assert served.generation == 0
    assert cache.generation == 1
    assert cache.cached(ui.selector) is None


def test_slow_default_render_shortens_refresh_and_retargets() -> None:
    ticks = iter([0.0, 5.4, 100.0, 100.2])
    retargeted: list[int] = []

    def retarget(body: bytes, secs: int) -> bytes:
        retargeted.append(secs)
        return body + f"|{secs}".encode()

    render = CountingRender()
    cache = ViewCache(render, poll_interval_secs=30, retarget=retarget, clock=lambda: next(ticks))
    ui = _ui("x")
    cache.serve(ui)
    render.calls.clear()

    cache.advance_cycle()
    assert cache.effective_refresh_secs == 25
    assert retargeted == [25]
    assert cache.cached(DEFAULT_SELECTOR).endswith(b"|25")
    # Recent views are rendered with the new value directly.
    assert (ui.selector, 25) in render.calls

    cache.advance_cycle()
    assert cache.effective_refresh_secs == 30
    assert retargeted == [25, 30]


def test_failed_prerender_only_drops_that_view() -> None:
    bad = _ui("bad")
    good = _ui("good")
    state = {"fail": False}

    def render(view: UiState, refresh_secs: int) -> bytes:
        if view.selector == bad.selector and state["fail"]:
            raise RuntimeError("template blew up")
        return view.canonical().encode() or b"default"

    cache = ViewCache(render, poll_interval_secs=30)
    cache.advance_cycle()
    cache.serve(bad)
    cache.serve(good)
    state["fail"] = True

    assert cache.advance_cycle() == 2
    assert cache.cached(good.selector) is not None
    assert cache.cached(bad.selector) is None
    assert cache.cached(DEFAULT_SELECTOR) == b"default"
