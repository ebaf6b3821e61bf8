"""
Domain models and shared helpers used by every pipeline stage.
"""
