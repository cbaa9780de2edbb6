"""
Missiv: desk-to-desk messaging with per-desk basket views.
"""

__version__ = "1.0.0"
