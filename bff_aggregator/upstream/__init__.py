"""Upstream service clients."""

from bff_aggregator.upstream.pool import AdmissionGate, UpstreamClientPool, render_request

__all__ = ["AdmissionGate", "UpstreamClientPool", "render_request"]
