"""
HTTP fetching of candidate pages.
"""
