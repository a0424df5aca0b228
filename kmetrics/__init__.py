"""Resource metrics storage, usage calculation, node address choice, scrape loop and health probes."""

__version__ = "0.1.0"

__all__ = ["address", "monitoring", "server", "storage", "types"]