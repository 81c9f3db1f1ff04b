"""ErrorWatch — self-hosted error and performance monitoring backend.

This package holds the ingestion core: the dashboard auth gateway with its
session cache, the durable job queues and their worker pools, and the
real-time notification fan-out to dashboard sessions.
"""

__version__ = "0.1.0"
