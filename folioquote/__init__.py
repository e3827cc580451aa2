"""folioquote: market price acquisition and resilience for a holdings tracker."""

__version__ = "0.3.0"
