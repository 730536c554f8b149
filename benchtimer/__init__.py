"""Work-timer lifecycle service for repair-shop tickets."""

__version__ = "0.1.0"
