"""Jarvis: OMI webhook receiver and assistant backend."""

__version__ = "0.1.0"
