"""
Query expansion, intent analysis, and multi-provider web search.
"""
