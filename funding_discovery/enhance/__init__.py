"""
Relevance filtering and funding-focused content extraction.
"""

from funding_discovery.enhance.content_extractor import ContentExtractor
from funding_discovery.enhance.relevance_scorer import RelevanceFilter

__all__ = ['ContentExtractor', 'RelevanceFilter']
