"""
Benchmark harness for HTTP services.

This package starts or attaches to a service, drives concurrent load against it
while sampling throughput, memory and latency metrics on a fixed cadence, grades
the aggregated results against declared targets and reports the bottlenecks.
"""

from .main import main

__all__ = ["main"]
