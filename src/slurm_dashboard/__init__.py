"""Slurm Cluster Dashboard.

JSON API backend for an HPC cluster dashboard: node listings from the SLURM
REST API, per-cluster utilization, and IPMI power telemetry from Prometheus.
"""

__version__ = "0.1.0"
