"""
Hybrid rule-based + AI fit scoring.
"""
