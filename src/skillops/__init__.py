"""skillops: self-update and session-finalization pipelines for managed skill trees."""

__version__ = "0.4.0"
