"""
Funding opportunity discovery and scoring pipeline.
"""

__version__ = "0.3.0"
