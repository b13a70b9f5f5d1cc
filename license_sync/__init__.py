"""External license sync and reconciliation"""

__version__ = "1.0.0"
