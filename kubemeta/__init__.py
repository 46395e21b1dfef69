"""kubemeta: watch-driven Kubernetes metadata cache for telemetry enrichment."""

__version__ = "0.1.0"
