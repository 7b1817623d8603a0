from __future__ import annotations

import base64
import time
from pathlib import Path
from urllib.parse import parse_qs

import httpx
import pytest

from host_checks.config import GlassConfig, Host, MailerConfig
from host_checks.errors import ConfigError
from host_checks.store import STATUS_UP, ProbeResult, ResultStore
from status_page.digest import DigestMailer, inline_css_vars, parse_send_at, send_mailgun


TOKENS = """
:root {
  --base: #111;
  --accent: var(--base);
  --deep: var(--accent);
  --pad: 4px;
}
"""


def _mailer() -> MailerConfig:
    return MailerConfig(
        mailgun_domain="mg.example.org",
        mailgun_api_key="key-secret",
        from_addr="glass <glass@mg.example.org>",
        to=["a@example.org", "b@example.org"],
    )


def test_inline_css_vars_resolves_chains() -> None:
    html = "<style>a{color:var(--deep);padding:var( --pad )}</style>"
    assert inline_css_vars(html, TOKENS) == "<style>a{color:#111;padding:4px}</style>"


def test_inline_css_vars_fallbacks_and_unknowns() -> None:
    html = "b{color:var(--accent, red);margin:var(--missing, calc(1px + 2px))}"
    out = inline_css_vars(html, TOKENS)
    assert out == "b{color:#111;margin:var(--missing, calc(1px + 2px))}"


def test_send_mailgun_posts_form_with_basic_auth() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"id": "<x@mg>", "message": "Queued"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    ok, info = send_mailgun(client, _mailer(), "<p>hi</p>")

    assert ok is True and info == {"status": 200}
    req = seen[0]
    assert str(req.url) == "https://api.mailgun.net/v3/mg.example.org/messages"
    assert req.headers["authorization"] == "Basic " + base64.b64encode(b"api:key-secret").decode()
    form = parse_qs(req.content.decode())
    assert form["from"] == ["glass <glass@mg.example.org>"]
    assert form["to"] == ["a@example.org,b@example.org"]
    assert form["subject"] == ["pi-glass status"]
    assert form["html"] == ["<p>hi</p>"]


def test_send_mailgun_reports_rejection() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(401, text="Forbidden")))
    ok, info = send_mailgun(client, _mailer(), "<p>hi</p>")
    assert ok is False
    assert info["status"] == 401


def test_send_mailgun_redacts_key_on_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("failed for key-secret", request=request)

    client = httpx.Client(transport=httpx.MockTransport(handler))
    ok, info = send_mailgun(client, _mailer(), "<p>hi</p>")
    assert ok is False
    assert "key-secret" not in info["error"]


def test_parse_send_at() -> None:
    assert parse_send_at("08:00") == (8, 0)
    assert parse_send_at("23:59") == (23, 59)
    for bad in ("8am", "24:00", "12:60", ""):
        with pytest.raises(ConfigError):
            parse_send_at(bad)


def test_digest_requires_mailer_section() -> None:
    with pytest.raises(ConfigError):
        DigestMailer(GlassConfig())


def test_send_once_renders_inlined_page(tmp_path: Path) -> None:
    db = str(tmp_path / "glass.db")
    now = time.time()
    ResultStore(db).commit_cycle([ProbeResult("192.168.1.1", now, STATUS_UP, 2.0)], 0.0)

    bodies: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(parse_qs(request.content.decode())["html"][0])
        return httpx.Response(200, json={"message": "Queued"})

    config = GlassConfig(db_path=db, hosts=[Host(addr="192.168.1.1", label="Gateway")], services=[], mailer=_mailer())
    mailer = DigestMailer(config, client=httpx.Client(transport=httpx.MockTransport(handler)))

    assert mailer.send_once() is True
    html = bodies[0]
    assert "Gateway" in html
    assert "var(--color-" not in html
    assert "<script" not in html


def test_send_once_without_database_fails(tmp_path: Path) -> None:
    config = GlassConfig(db_path=str(tmp_path / "missing.db"), mailer=_mailer())
    mailer = DigestMailer(config, client=httpx.Client(transport=httpx.MockTransport(lambda r: httpx.Response(200))))
    assert mailer.send_once() is False
