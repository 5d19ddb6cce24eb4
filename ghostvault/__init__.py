"""
GhostVault: companion daemon for a Ghost proof-of-stake node.
"""

from .core.constants import VERSION

__version__ = VERSION
