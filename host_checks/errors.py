from __future__ import annotations


class GlassError(Exception):
    """Base class for errors raised by the status board."""


class ConfigError(GlassError):
    """The configuration could not be loaded or is unusable."""


class ProbeInitError(GlassError):
    """The probe subsystem cannot start (e.g. no ICMP socket privilege)."""


class StoreError(GlassError):
    """The result store cannot be opened, read or written."""
