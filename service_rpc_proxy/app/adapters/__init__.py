"""Upstream adapters."""

from .upstream_client import UpstreamClient

__all__ = ["UpstreamClient"]
