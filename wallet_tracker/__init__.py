"""TRON wallet transaction tracker."""

__version__ = "1.0.0"
