"""Job-queued product listing scraper with a managed browser pool."""

__version__ = "0.1.0"
