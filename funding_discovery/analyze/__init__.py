"""
LLM structuring of extracted content into opportunity records.
"""
