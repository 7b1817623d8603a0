"""Daily digest mail.

A separate process from the status board: it opens the result store read-only,
renders the full page with every section expanded and the CSS custom
properties resolved inline (mail clients do not support ``var()``), and posts
it to Mailgun once a day.

    python -m status_page.digest --config /opt/pi-glass/config.yaml [--now]
"""

from __future__ import annotations

import argparse
import sys

import httpx
import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from apscheduler.triggers.cron import CronTrigger

from host_checks.config import GlassConfig, MailerConfig, load_config
from host_checks.errors import ConfigError, StoreError
from host_checks.store import ReadStore
from status_page.assets import StaticAssets, load_assets
from status_page.render import PageRenderer
from status_page.server import configure_logging


logger = structlog.get_logger(__name__)

MAILGUN_URL = "https://api.mailgun.net/v3/{domain}/messages"
MAX_VAR_PASSES = 10


def parse_css_vars(css: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for line in css.splitlines():
        line = line.strip()
        if not line.startswith("--"):
            continue
        name, sep, value = line.partition(":")
        if not sep:
            continue
        out[name.strip()] = value.strip().rstrip(";").strip()
    return out


def substitute_vars(text: str, variables: dict[str, str]) -> str:
    """Replace ``var(--x)`` and ``var(--x, fallback)`` with known values; unknown ones are kept."""
    parts: list[str] = []
    rest = text
    while True:
        idx = rest.find("var(")
        if idx < 0:
            break
        parts.append(rest[:idx])
        rest = rest[idx + 4:]

        # Matching close paren; fallbacks may nest parens of their own.
        depth = 1
        end = len(rest)
        for i, ch in enumerate(rest):
            if ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    end = i
                    break

        inner = rest[:end]
        name = inner.split(",", 1)[0].strip()
        if name in variables:
            parts.append(variables[name])
        else:
            parts.append(f"var({inner})")
        rest = rest[end + 1:]
    parts.append(rest)
    return "".join(parts)


def inline_css_vars(html: str, tokens_css: str) -> str:
    variables = parse_css_vars(tokens_css)

    # Definitions may reference each other; resolve chains a bounded number of times.
    for _ in range(MAX_VAR_PASSES):
        changed = False
        for name, value in list(variables.items()):
            if "var(" not in value:
                continue
            resolved = substitute_vars(value, variables)
            if resolved != value:
                variables[name] = resolved
                changed = True
        if not changed:
            break

    return substitute_vars(html, variables)


def build_digest_html(renderer: PageRenderer, store: ReadStore, assets: StaticAssets) -> str:
    page = renderer.render_full_page(store, inline_css=assets.app_css)
    return inline_css_vars(page, assets.tokens_css)


def send_mailgun(client: httpx.Client, mailer: MailerConfig, html: str) -> tuple[bool, dict]:
    url = MAILGUN_URL.format(domain=mailer.mailgun_domain)
    data = {
        "from": mailer.from_addr,
        "to": ",".join(mailer.to),
        "subject": mailer.subject,
        "html": html,
    }
    try:
        resp = client.post(url, auth=("api", mailer.mailgun_api_key), data=data, timeout=30.0)
        if resp.status_code >= 400:
            return False, {"status": resp.status_code, "error": resp.text[:500]}
        return True, {"status": resp.status_code}
    except httpx.HTTPError as e:
        msg = f"{type(e).__name__}: {e}"
        return False, {"error": msg.replace(mailer.mailgun_api_key, "<redacted>")}


def parse_send_at(send_at: str) -> tuple[int, int]:
    hour, sep, minute = str(send_at).strip().partition(":")
    if not sep or not hour.isdigit() or not minute.isdigit():
        raise ConfigError(f"send_at must be HH:MM, got {send_at!r}")
    h, m = int(hour), int(minute)
    if h > 23 or m > 59:
        raise ConfigError(f"send_at out of range: {send_at!r}")
    return h, m


class DigestMailer:
    def __init__(self, config: GlassConfig, *, client: httpx.Client | None = None) -> None:
        if config.mailer is None:
            raise ConfigError("No mailer section in config")
        self.config = config
        self.mailer = config.mailer
        self.client = client or httpx.Client()
        self.assets = load_assets()
        self.renderer = PageRenderer(
            name=config.name,
            hosts=config.hosts,
            services=config.services,
            assets=self.assets,
        )

    def send_once(self) -> bool:
        try:
            store = ReadStore(self.config.db_path)
        except StoreError as exc:
            logger.error("Digest skipped, store unavailable", error=str(exc))
            return False
        try:
            html = build_digest_html(self.renderer, store, self.assets)
        finally:
            store.close()

        ok, info = send_mailgun(self.client, self.mailer, html)
        if ok:
            logger.info("Digest sent", to=self.mailer.to, bytes=len(html))
        else:
            logger.error("Digest send failed", **info)
        return ok

    def run_forever(self) -> None:
        hour, minute = parse_send_at(self.mailer.send_at)
        scheduler = BlockingScheduler()
        scheduler.add_job(
            self.send_once,
            trigger=CronTrigger(hour=hour, minute=minute),
            id="daily-digest",
            name="daily digest",
            max_instances=1,
            coalesce=True,
        )
        logger.info("Digest scheduled", send_at=self.mailer.send_at, to=self.mailer.to)
        try:
            scheduler.start()
        except (KeyboardInterrupt, SystemExit):
            logger.info("Digest scheduler stopped")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="pi-glass daily digest mailer")
    parser.add_argument("--config", default=None, help="Path to config.yaml")
    parser.add_argument("--now", action="store_true", help="Send one digest immediately and exit")
    args = parser.parse_args(argv)

    loaded = load_config(args.config)
    configure_logging(loaded.config.log_level)

    try:
        mailer = DigestMailer(loaded.config)
    except ConfigError as exc:
        logger.error("Digest not configured", path=loaded.path, error=str(exc))
        return 2

    if args.now:
        return 0 if mailer.send_once() else 1

    try:
        mailer.run_forever()
    except ConfigError as exc:
        logger.error("Invalid digest schedule", error=str(exc))
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())
