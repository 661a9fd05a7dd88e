"""TV Box Sync - content synchronization and offline cache for display clients."""

__version__ = "0.4.0"
