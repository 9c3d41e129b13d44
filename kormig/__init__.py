"""
Korea China-shock internal migration pipeline.
"""

__version__ = "0.1.0"
