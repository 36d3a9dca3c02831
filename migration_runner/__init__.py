"""Run repository migrations in parallel with a bounded number of workers."""

__version__ = "0.1.0"
