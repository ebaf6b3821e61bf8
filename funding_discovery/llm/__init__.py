"""
LLM provider clients with ordered fallback.
"""
