"""
py-lem: terrain synthesis by implicit stream-power landscape evolution.
"""

__version__ = "0.1.0"
