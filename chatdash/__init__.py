"""chatdash: AI chat dashboard backend with subscription billing."""

__version__ = "0.1.0"
