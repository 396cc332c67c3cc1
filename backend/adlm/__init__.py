"""ADLM Studio licensing backend."""

__version__ = "0.1.0"
