"""finmail - Gmail financial email dashboard API."""

__version__ = "0.1.0"
