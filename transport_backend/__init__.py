"""Consignment intake and truck allocation backend for the transport operations tracker."""

__version__ = "1.0.0"
