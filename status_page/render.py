"""HTML rendering of the status page.

Rendering is a pure function of the read-only store, the configured targets,
the UI state, the resolved-address snapshot and the refresh hint. It can be
slow (many small queries and string assembly), which is what the view cache
amortises.
"""

from __future__ import annotations

import re
import statistics
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, select_autoescape

from host_checks.config import Host, Service
from host_checks.store import STATUS_DOWN, STATUS_UP, ProbeResult, ReadStore, WindowStats
from host_checks.targets import host_key, service_key
from status_page.assets import StaticAssets, load_icons
from status_page.ui_state import UiState


TEMPLATES_DIR = Path(__file__).parent / "templates"

SPARK_BARS = 40
HOST_DETAIL_ROWS = 20
SERVICE_DETAIL_ROWS = 10
WINDOWS: tuple[tuple[str, int], ...] = (("5m", 5), ("1h", 60), ("24h", 1440), ("7d", 10080))

# Cards in display order: (title, check kind).
SERVICE_CARDS: tuple[tuple[str, str], ...] = (("Web", "tcp"), ("ICMP", "ping"), ("DNS", "dns"))

_REFRESH_META_RE = re.compile(rb'(<meta http-equiv="refresh" content=")(\d+)(")')


def fmt_pct(value: float | None) -> str:
    if value is None:
        return "--"
    v = float(value)
    if v <= 0.0 or v >= 100.0:
        return f"{v:.0f}%"
    return f"{v:.1f}%"


def fmt_ms(value: float | None) -> str:
    return "--" if value is None else f"{float(value):.1f}"


def fmt_latency(value: float | None) -> str:
    return "" if value is None else f"{float(value):.0f}ms"


def fmt_time(ts: float) -> str:
    return datetime.fromtimestamp(float(ts)).strftime("%H:%M:%S.%f")[:-3]


def tier_class(uptime_pct: float | None) -> str:
    if uptime_pct is None:
        return "tier-down"
    if uptime_pct >= 100.0:
        return "tier-perfect"
    if uptime_pct >= 99.0:
        return "tier-good"
    if uptime_pct >= 95.0:
        return "tier-degraded"
    if uptime_pct > 0.0:
        return "tier-critical"
    return "tier-down"


def state_tier(status: str) -> str:
    if status == STATUS_UP:
        return "tier-good"
    if status == STATUS_DOWN:
        return "tier-down"
    return "tier-neutral"


def status_glyph(status: str) -> tuple[str, str]:
    if status == STATUS_UP:
        return "up", "✓"
    if status == STATUS_DOWN:
        return "down", "✗"
    return "unknown", "–"


@dataclass(frozen=True)
class Sparkline:
    pad: int
    values: list[int] = field(default_factory=list)
    title: str = ""


def sparkline(checks: list[ProbeResult], *, bars: int = SPARK_BARS) -> Sparkline:
    """Bars for the last checks, oldest on the left.

    UP bars are scaled to 1..99 between the window's min and max latency (flat 50
    when the spread is under half a millisecond), DOWN bars sit at 0. Missing
    history is padded on the left so every sparkline has the same width.
    """
    pad = max(0, bars - len(checks))
    if not checks:
        return Sparkline(pad=pad)

    ordered = list(reversed(checks))
    latencies = [c.latency_ms for c in ordered if c.status == STATUS_UP and c.latency_ms is not None]
    if not latencies:
        return Sparkline(pad=pad, values=[0] * len(ordered), title=f"{len(checks)} checks · all down")

    avg = statistics.fmean(latencies)
    stddev = statistics.stdev(latencies) if len(latencies) > 1 else 0.0
    lo, hi = min(latencies), max(latencies)
    spread = hi - lo

    values: list[int] = []
    for c in ordered:
        if c.status != STATUS_UP:
            values.append(0)
        elif spread < 0.5:
            values.append(50)
        else:
            v = c.latency_ms if c.latency_ms is not None else lo
            values.append(int(round(1.0 + (v - lo) / spread * 99.0)))

    title = (
        f"{len(checks)} checks · avg {avg:.0f}ms ±{stddev:.0f} · min {lo:.0f}ms · max {hi:.0f}ms"
    )
    return Sparkline(pad=pad, values=values, title=title)


def retarget_refresh(body: bytes, refresh_secs: int) -> bytes:
    """Rewrite the page's auto-refresh hint in place."""
    return _REFRESH_META_RE.sub(lambda m: m.group(1) + str(int(refresh_secs)).encode() + m.group(3), body, count=1)


def _stats_view(windows: dict[str, WindowStats]) -> list[dict[str, str]]:
    rows = []
    for label, _minutes in WINDOWS:
        w = windows[label]
        loss = None if w.uptime_pct is None else 100.0 - w.uptime_pct
        rows.append(
            {
                "label": label,
                "uptime": fmt_pct(w.uptime_pct),
                "avg": fmt_ms(w.avg_ms),
                "min": fmt_ms(w.min_ms),
                "max": fmt_ms(w.max_ms),
                "loss": fmt_pct(loss),
            }
        )
    return rows


def _detail_rows(checks: list[ProbeResult]) -> list[dict[str, str]]:
    out = []
    for c in checks:
        if c.status == STATUS_UP:
            dot_class, dot_char = "status-up", "✓"
        elif c.status == STATUS_DOWN:
            dot_class, dot_char = "status-down", "✗"
        else:
            dot_class, dot_char = "", "–"
        out.append(
            {
                "time": fmt_time(c.ts),
                "latency": "" if c.latency_ms is None else f"{float(c.latency_ms):.1f}ms",
                "dot_class": dot_class,
                "dot_char": dot_char,
            }
        )
    return out


class PageRenderer:
    def __init__(
        self,
        *,
        name: str,
        hosts: list[Host],
        services: list[Service],
        assets: StaticAssets,
        default_config_yaml: str | None = None,
        templates_dir: Path = TEMPLATES_DIR,
    ) -> None:
        self.name = name
        self.hosts = list(hosts)
        self.services = list(services)
        self.assets = assets
        self.default_config_yaml = default_config_yaml
        self.icons = load_icons()
        self.env = Environment(
            loader=FileSystemLoader(str(templates_dir)),
            autoescape=select_autoescape(["html"]),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _windows(self, store: ReadStore, key: str, now: float) -> dict[str, WindowStats]:
        return {label: store.window_stats(key, minutes, now_ts=now) for label, minutes in WINDOWS}

    def _icon_html(self, svc: Service) -> str | None:
        # None means the template renders the data: URI instead.
        if svc.icon_data:
            return None
        return self.icons.get(svc.icon) or self.icons.get("fallback", "")

    def _host_view(self, store: ReadStore, host: Host, user_open: bool | None, now: float) -> dict[str, Any]:
        key = host_key(host)
        windows = self._windows(store, key, now)
        status, latency = store.latest_status(key)
        recent = store.recent_checks(key, SPARK_BARS)
        w1h = windows["1h"]
        dot_class, dot_char = status_glyph(status)

        # Without a stored preference, anything that was not fully up in the last hour is shown open.
        if user_open is None:
            is_open = not (w1h.uptime_pct is None or w1h.uptime_pct >= 100.0)
        else:
            is_open = user_open

        return {
            "addr": host.addr,
            "label": host.label,
            "open": is_open,
            "tier": state_tier(status),
            "latency": fmt_latency(latency),
            "uptime_1h": fmt_pct(w1h.uptime_pct),
            "dot_class": dot_class,
            "dot_char": dot_char,
            "spark": sparkline(recent),
            "stats": _stats_view(windows),
            "details": _detail_rows(recent[:HOST_DETAIL_ROWS]),
            "details_label": f"Last {HOST_DETAIL_ROWS} pings",
        }

    def _service_view(
        self,
        store: ReadStore,
        svc: Service,
        item_id: str,
        user_open: bool | None,
        resolved_ip: str | None,
        now: float,
    ) -> dict[str, Any]:
        key = service_key(svc)
        status, latency = store.latest_status(key)
        windows = self._windows(store, key, now)
        recent = store.recent_checks(key, SPARK_BARS)
        dot_class, dot_char = status_glyph(status)
        uptime_1h = fmt_pct(windows["1h"].uptime_pct)
        return {
            "id": item_id,
            "label": svc.label,
            "check": svc.check,
            "target": svc.target,
            "open": bool(user_open),
            "icon_html": self._icon_html(svc),
            "icon_data": svc.icon_data,
            "dot_class": dot_class,
            "dot_char": dot_char,
            "latency": fmt_latency(latency),
            "tier": state_tier(status),
            "uptime_1h": uptime_1h,
            "resolved_ip": resolved_ip,
            "spark": sparkline(recent),
            "stats": _stats_view(windows),
            "details": _detail_rows(recent[:SERVICE_DETAIL_ROWS]),
            "details_label": f"Last {SERVICE_DETAIL_ROWS} checks",
        }

    def _service_cards(
        self,
        store: ReadStore,
        ui: UiState,
        resolved: dict[str, str | None],
        now: float,
    ) -> list[dict[str, Any]]:
        cards: list[dict[str, Any]] = []
        start_idx = 0
        for title, kind in SERVICE_CARDS:
            svcs = sorted(
                (s for s in self.services if s.check.strip().lower() == kind), key=lambda s: s.label.lower()
            )
            if not svcs:
                continue

            items = []
            up_count = 0
            for i, svc in enumerate(svcs):
                item_id = f"svc-{start_idx + i}"
                item_open = None if ui.open_svc_items is None else item_id in ui.open_svc_items
                item = self._service_view(store, svc, item_id, item_open, resolved.get(svc.label), now)
                if item["dot_class"] == "up":
                    up_count += 1
                items.append(item)
            start_idx += len(svcs)

            card_uptime = store.group_uptime([service_key(s) for s in svcs], 60, now_ts=now)
            total = len(svcs)
            if up_count == total:
                dot_class, dot_char = "up", "✓"
            else:
                dot_class, dot_char = "down", "✗"
            cards.append(
                {
                    "title": title,
                    "open": ui.open_svc_cards is None or title in ui.open_svc_cards,
                    "up_count": up_count,
                    "total": total,
                    "tier": tier_class(card_uptime),
                    "title_attr": f"1h uptime: {fmt_pct(card_uptime)}" if card_uptime is not None else "No data",
                    "dot_class": dot_class,
                    "dot_char": dot_char,
                    "items": items,
                }
            )
        return cards

    def _page(
        self,
        store: ReadStore,
        ui: UiState,
        resolved: dict[str, str | None],
        *,
        refresh_secs: int | None,
        inline_css: str | None,
        include_script: bool,
        show_config: bool,
        now_ts: float | None,
    ) -> str:
        now = float(now_ts) if now_ts is not None else time.time()
        hosts = []
        for host in self.hosts:
            user_open = None if ui.open_hosts is None else host.addr in ui.open_hosts
            hosts.append(self._host_view(store, host, user_open, now))

        template = self.env.get_template("page.html")
        return template.render(
            name=self.name,
            refresh_secs=refresh_secs,
            css_path=self.assets.css_path,
            js_path=self.assets.js_path if include_script else None,
            inline_css=inline_css,
            cards=self._service_cards(store, ui, resolved, now),
            hosts=hosts,
            config_yaml=self.default_config_yaml if show_config else None,
        )

    def render(
        self,
        store: ReadStore,
        ui: UiState,
        resolved: dict[str, str | None],
        refresh_secs: int,
        *,
        now_ts: float | None = None,
    ) -> bytes:
        html = self._page(
            store,
            ui,
            resolved,
            refresh_secs=int(refresh_secs),
            inline_css=None,
            include_script=True,
            show_config=True,
            now_ts=now_ts,
        )
        return html.encode("utf-8")

    def render_full_page(self, store: ReadStore, *, inline_css: str, now_ts: float | None = None) -> str:
        """Everything expanded, styles inline, no script or refresh: for mail clients."""
        all_open = UiState(
            open_hosts=frozenset(h.addr for h in self.hosts),
            open_svc_cards=None,
            open_svc_items=frozenset(f"svc-{i}" for i in range(len(self.services))),
        )
        return self._page(
            store,
            all_open,
            {},
            refresh_secs=None,
            inline_css=inline_css,
            include_script=False,
            show_config=False,
            now_ts=now_ts,
        )
