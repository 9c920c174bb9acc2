"""Domain services: the AI request pipeline and the RAG indexer."""
