"""Delivery snapshot log and manual coordination task tracking."""

__version__ = "0.1.0"
