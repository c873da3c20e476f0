"""Observability: structlog logging and Prometheus metrics."""
