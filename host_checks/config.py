"""Configuration for the status board.

The config is read once at startup from a YAML file; environment variables
override individual scalar settings. A missing or broken file is not fatal:
the defaults are used and the default YAML is shown on the page so it can be
saved and edited.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import structlog
import yaml
from pydantic import BaseModel, Field, ValidationError

from host_checks.errors import ConfigError


logger = structlog.get_logger(__name__)

DATA_DIR = "/opt/pi-glass"
DEFAULT_CONFIG_PATH = f"{DATA_DIR}/config.yaml"
DEFAULT_LISTEN = "0.0.0.0:8080"
DEFAULT_POLL_INTERVAL_SECS = 30
DEFAULT_PING_TIMEOUT_SECS = 2
DEFAULT_RETENTION_DAYS = 7

CHECK_KINDS = ("ping", "tcp", "dns")


class Host(BaseModel):
    """LAN host, checked by ICMP ping on its raw address."""
    addr: str
    label: str


class Service(BaseModel):
    """External service. ``check`` is kept as free text so unknown kinds reach the prober and get logged."""
    label: str
    check: str
    target: str
    icon: str = ""
    icon_data: Optional[str] = Field(default=None, description="data: URI overriding the built-in icon")


class MailerConfig(BaseModel):
    """Daily digest mail settings (Mailgun)."""
    mailgun_domain: str
    mailgun_api_key: str
    from_addr: str = Field(alias="from")
    to: list[str]
    subject: str = "pi-glass status"
    send_at: str = "08:00"

    model_config = {"populate_by_name": True}


def _default_hosts() -> list[Host]:
    return [Host(addr="192.168.1.1", label="Gateway")]


def _default_services() -> list[Service]:
    return [
        Service(label="Google", icon="google", check="ping", target="google.com"),
        Service(label="Cloudflare", icon="cloudflare", check="tcp", target="cloudflare.com:443"),
        Service(label="YouTube", icon="youtube", check="tcp", target="youtube.com:443"),
        Service(label="Outlook", icon="outlook", check="tcp", target="outlook.com:443"),
        Service(label="WhatsApp", icon="whatsapp", check="tcp", target="web.whatsapp.com:443"),
        Service(label="Cloudflare DNS", icon="cloudflare", check="dns", target="1.1.1.1"),
        Service(label="Google DNS", icon="google", check="dns", target="8.8.8.8"),
        Service(label="Quad9 DNS", icon="quad9", check="dns", target="9.9.9.9"),
    ]


class GlassConfig(BaseModel):
    """Main configuration for the status board."""

    name: str = Field(default="pi-glass", description="Dashboard name shown in the tab and heading")
    listen: str = Field(default=DEFAULT_LISTEN, description="host:port to listen on")
    db_path: str = Field(default=f"{DATA_DIR}/pi-glass.db", description="SQLite database path")
    poll_interval_secs: int = Field(default=DEFAULT_POLL_INTERVAL_SECS, ge=1, description="Seconds between check rounds")
    ping_timeout_secs: int = Field(default=DEFAULT_PING_TIMEOUT_SECS, ge=1, description="Per-check timeout")
    retention_days: int = Field(default=DEFAULT_RETENTION_DAYS, ge=1, description="Days of history to keep")
    wal_mode: bool = Field(default=True, description="Use the WAL journal so renders never block the writer")
    compression: str = Field(default="gzip", description="Response compression: gzip or none")
    log_level: str = Field(default="INFO", description="Logging level")

    hosts: list[Host] = Field(default_factory=_default_hosts)
    services: list[Service] = Field(default_factory=_default_services)
    mailer: Optional[MailerConfig] = None

    def listen_host_port(self) -> tuple[str, int]:
        host, sep, port = self.listen.rpartition(":")
        if not sep or not port.isdigit():
            raise ConfigError(f"listen must be host:port, got {self.listen!r}")
        return (host.strip("[]") or "0.0.0.0"), int(port)


@dataclass(frozen=True)
class LoadedConfig:
    config: GlassConfig
    path: str
    # Set when the file was missing or unusable; rendered on the page as a starting point.
    default_yaml: str | None = None


def _env_overrides() -> dict[str, Any]:
    raw = {
        "name": os.getenv("GLASS_NAME"),
        "listen": os.getenv("GLASS_LISTEN"),
        "db_path": os.getenv("GLASS_DB_PATH"),
        "poll_interval_secs": os.getenv("GLASS_POLL_INTERVAL_SECS"),
        "ping_timeout_secs": os.getenv("GLASS_PING_TIMEOUT_SECS"),
        "retention_days": os.getenv("GLASS_RETENTION_DAYS"),
        "wal_mode": os.getenv("GLASS_WAL_MODE"),
        "compression": os.getenv("GLASS_COMPRESSION"),
        "log_level": os.getenv("LOG_LEVEL"),
    }
    out: dict[str, Any] = {}
    for key, value in raw.items():
        if value is None or not value.strip():
            continue
        value = value.strip()
        if key in ("poll_interval_secs", "ping_timeout_secs", "retention_days"):
            try:
                out[key] = int(value)
            except ValueError:
                logger.warning("Ignoring non-integer env override", key=key, value=value)
            continue
        if key == "wal_mode":
            out[key] = value.lower() in ("1", "true", "yes", "on")
            continue
        out[key] = value
    return out


def resolve_config_path(cli_path: str | None = None) -> str:
    if cli_path:
        return cli_path
    return os.getenv("GLASS_CONFIG", "").strip() or DEFAULT_CONFIG_PATH


def load_config(path: str | None = None) -> LoadedConfig:
    """Load config from file, then apply env overrides. Falls back to defaults."""
    config_path = resolve_config_path(path)
    data: dict[str, Any] = {}
    default_yaml: str | None = None

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ConfigError("Config YAML must be a mapping")
        data = loaded
        logger.info("Loaded config", path=config_path)
    except FileNotFoundError:
        logger.warning("No config file, using defaults", path=config_path)
        default_yaml = default_config_yaml()
    except (yaml.YAMLError, ConfigError) as exc:
        logger.warning("Failed to parse config, using defaults", path=config_path, error=str(exc))
        default_yaml = default_config_yaml()

    overrides = _env_overrides()
    try:
        config = GlassConfig(**{**data, **overrides})
    except ValidationError as exc:
        logger.warning("Invalid config values, using defaults", path=config_path, error=str(exc))
        default_yaml = default_config_yaml()
        config = GlassConfig(**overrides)

    return LoadedConfig(config=config, path=config_path, default_yaml=default_yaml)


def default_config_yaml() -> str:
    return _DEFAULT_CONFIG_YAML


_DEFAULT_CONFIG_YAML = """\
# pi-glass configuration: no config file found, showing defaults.
# Save this file as /opt/pi-glass/config.yaml (or pass --config <path>).

# Dashboard name shown in the browser tab and page heading
name: pi-glass

# Address and port to listen on
listen: "0.0.0.0:8080"

# SQLite database path (directory is created on first run)
# db_path: /opt/pi-glass/pi-glass.db

# Seconds between each round of checks
poll_interval_secs: 30

# Per-check timeout for ping / TCP connect / DNS query (seconds)
ping_timeout_secs: 2

# Days of history to retain in the database
retention_days: 7

# WAL journal mode lets page renders read while the poller writes.
# Needs shared-memory support on the filesystem holding db_path.
wal_mode: true

# LAN hosts are checked by ICMP ping. Each gets a collapsible stats card.
# Needs CAP_NET_RAW (or net.ipv4.ping_group_range) on Linux.
hosts:
  - addr: 192.168.1.1
    label: Gateway

# External services
#   check: ping  ICMP echo to a hostname or IP
#          tcp   TCP connect to "host:port"
#          dns   UDP A-query sent straight to a nameserver IP
#   icon:  google, cloudflare, youtube, outlook, whatsapp, quad9, dns
#   icon_data: data URI override, e.g. "data:image/png;base64,..."
services:
  - {label: Google, icon: google, check: ping, target: google.com}
  - {label: Cloudflare, icon: cloudflare, check: tcp, target: "cloudflare.com:443"}
  - {label: YouTube, icon: youtube, check: tcp, target: "youtube.com:443"}
  - {label: Outlook, icon: outlook, check: tcp, target: "outlook.com:443"}
  - {label: WhatsApp, icon: whatsapp, check: tcp, target: "web.whatsapp.com:443"}
  - {label: Cloudflare DNS, icon: cloudflare, check: dns, target: 1.1.1.1}
  - {label: Google DNS, icon: google, check: dns, target: 8.8.8.8}
  - {label: Quad9 DNS, icon: quad9, check: dns, target: 9.9.9.9}

# Daily digest mail (python -m status_page.digest)
# mailer:
#   mailgun_domain: mg.example.org
#   mailgun_api_key: key-...
#   from: "pi-glass <glass@mg.example.org>"
#   to: [you@example.org]
#   subject: pi-glass status
#   send_at: "08:00"
"""
