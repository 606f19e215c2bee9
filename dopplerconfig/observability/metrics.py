"""Prometheus metrics for dopplerconfig.

Tracks load outcomes and latency, watcher health, and tenant reload failures.
"""

from prometheus_client import Counter, Gauge, Histogram

# Load metrics
CONFIG_LOADS = Counter(
    "dopplerconfig_loads_total",
    "Total number of configuration loads",
    labelnames=["source", "outcome"],
)

CONFIG_LOAD_LATENCY = Histogram(
    "dopplerconfig_load_latency_seconds",
    "Configuration load latency in seconds",
    labelnames=["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

MAPPING_WARNINGS = Counter(
    "dopplerconfig_mapping_warnings_total",
    "Total number of non-fatal field mapping warnings",
    labelnames=["model"],
)

# Watcher metrics
WATCHER_FAILURES = Gauge(
    "dopplerconfig_watcher_failures",
    "Current consecutive reload failures of a watcher",
    labelnames=["watcher"],
)

# Multi-tenant metrics
TENANT_RELOAD_FAILURES = Counter(
    "dopplerconfig_tenant_reload_failures_total",
    "Total number of failed tenant reloads",
    labelnames=["project"],
)
