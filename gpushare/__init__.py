"""GPU device mapping, sharing, allocation and health checking."""

__version__ = "0.16.0"