"""
Background maintenance loops.
"""

from .compactor import Compactor

__all__ = ["Compactor"]
