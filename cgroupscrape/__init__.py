"""Per-cgroup CPU, memory and process metrics for cgroup v1 and v2, served in the Prometheus text format."""

__version__ = "0.1.0"
__all__ = ["__version__"]