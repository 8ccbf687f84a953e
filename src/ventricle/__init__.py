"""Ventricle: declarative change detection and extraction for web pages."""

__version__ = "0.4.0"
