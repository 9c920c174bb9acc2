"""
Core infrastructure modules.
Contains logging, configuration, metrics, tracing, caching, circuit breaking
and the database connection shared by the AI pipeline and the RAG indexer.
"""
