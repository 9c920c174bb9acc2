"""Retrieval-augmented AI request pipeline for CRM assistant features."""

__version__ = "0.1.0"
