"""trackmux: keeps one shared provider subscription in step with per-group watch-lists."""

__version__ = "0.1.0"
