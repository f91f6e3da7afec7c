"""Bluetooth snoop capture analysis for ASHA hearing-aid streams, and a G.722 encoder."""

__version__ = "0.1.0"