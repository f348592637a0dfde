"""
Prometheus metrics for event processing.
"""
