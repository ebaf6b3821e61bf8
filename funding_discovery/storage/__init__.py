"""
SQLite persistence: opportunities, scoring cache, profiles, fetch cache.
"""
