"""memoria - asynchronous knowledge pipeline for team chat."""

__version__ = "0.4.0"
__logo__ = "🧭"
