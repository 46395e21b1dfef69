"""Logging and Prometheus metrics for kubemeta."""
