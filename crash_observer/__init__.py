"""Read-only observer for a crash game's live event stream."""

__version__ = "0.1.0"
