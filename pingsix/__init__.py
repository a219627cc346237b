"""Route matching, upstream selection, plugins, SNI certificates and runtime configuration updates for an HTTP API gateway."""

__version__ = "0.1.0"