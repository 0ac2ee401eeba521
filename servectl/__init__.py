"""servectl: single-instance supervisor for a local web server."""

__version__ = "0.1.0"
