"""Buildfarm client: single-agent continuous build driver."""

__version__ = "0.1.0"
