"""klyro: developer reputation analysis and credentialing pipeline."""

__version__ = "0.1.0"
