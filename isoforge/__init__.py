"""
isoforge - build customized, bootable Windows installation media.
"""

__version__ = "0.1.0"
