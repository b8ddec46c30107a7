"""
Utility modules for the settlement pipeline.

This package contains shared helpers used across the application:
datetime handling, money formatting, and input validation.
"""

from utils.money import format_rubles

__all__ = ['format_rubles']
