"""Cataloger - static catalog of document-database usage."""

__version__ = "0.1.0"
