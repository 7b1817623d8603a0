from __future__ import annotations

from dataclasses import dataclass

from host_checks.config import GlassConfig, Host, Service


SERVICE_KEY_PREFIX = "svc:"


def host_key(host: Host) -> str:
    return host.addr


def service_key(service: Service) -> str:
    # Prefixed so services and hosts can share one result log.
    return f"{SERVICE_KEY_PREFIX}{service.label}"


@dataclass(frozen=True)
class ProbeTarget:
    """One entry of the per-cycle fan-out, flattened from a Host or a Service."""

    subject_key: str
    kind: str
    target: str
    label: str
    is_service: bool


def build_targets(config: GlassConfig) -> list[ProbeTarget]:
    """Hosts first, then services, both in config order."""
    out: list[ProbeTarget] = []
    for host in config.hosts:
        out.append(ProbeTarget(subject_key=host_key(host), kind="ping", target=host.addr, label=host.label, is_service=False))
    for svc in config.services:
        out.append(
            ProbeTarget(
                subject_key=service_key(svc),
                kind=str(svc.check or "").strip().lower(),
                target=svc.target,
                label=svc.label,
                is_service=True,
            )
        )
    return out
