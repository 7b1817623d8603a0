"""Client-visible UI state and the view selector derived from it.

The browser keeps which sections are expanded in a ``pg`` cookie:

    pg=ho=<addr>|<addr>&sc=<card title>|...&si=<svc-id>|...&t=<svc-id>

``ho`` lists open host cards, ``sc`` open service cards and ``si`` open service
items. ``t`` only drives the client-side detail popover and does not change
the rendered page, so it is not part of the selector.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass


COOKIE_NAME = "pg"


@dataclass(frozen=True)
class UiState:
    # None means "no preference": the renderer applies its own default.
    open_hosts: frozenset[str] | None = None
    open_svc_cards: frozenset[str] | None = None
    open_svc_items: frozenset[str] | None = None

    def canonical(self) -> str:
        parts: list[str] = []
        for key, values in (("ho", self.open_hosts), ("sc", self.open_svc_cards), ("si", self.open_svc_items)):
            if values is None:
                continue
            parts.append(f"{key}={'|'.join(sorted(values))}")
        return "&".join(parts)

    @property
    def selector(self) -> str:
        return selector_hash(self.canonical())

    @property
    def is_default(self) -> bool:
        return self.open_hosts is None and self.open_svc_cards is None and self.open_svc_items is None


DEFAULT_UI = UiState()


def selector_hash(canonical: str) -> str:
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


DEFAULT_SELECTOR = selector_hash("")


def _split_values(raw: str) -> frozenset[str]:
    return frozenset(v for v in raw.split("|") if v)


def parse_pg_value(pg: str | None) -> UiState:
    pg = str(pg or "").strip()
    if not pg:
        return DEFAULT_UI

    open_hosts = open_svc_cards = open_svc_items = None
    for field in pg.split("&"):
        key, sep, value = field.partition("=")
        if not sep:
            continue
        if key == "ho":
            open_hosts = _split_values(value)
        elif key == "sc":
            open_svc_cards = _split_values(value)
        elif key == "si":
            open_svc_items = _split_values(value)
    return UiState(open_hosts=open_hosts, open_svc_cards=open_svc_cards, open_svc_items=open_svc_items)


def parse_ui_cookie(cookie_header: str | None) -> UiState:
    """Parse a raw Cookie header; only the ``pg`` cookie matters."""
    for part in str(cookie_header or "").split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name == COOKIE_NAME:
            return parse_pg_value(value)
    return DEFAULT_UI
