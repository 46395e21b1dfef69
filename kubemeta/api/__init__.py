"""HTTP surface for kubemeta: health, Prometheus metrics and pod lookups."""
