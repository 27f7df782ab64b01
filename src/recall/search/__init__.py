"""Recall search — hybrid vector + BM25 retrieval."""

from recall.search.hybrid import HybridSearch, SearchOptions, SearchResult, truncate_snippet

__all__ = ["HybridSearch", "SearchOptions", "SearchResult", "truncate_snippet"]
