"""Recon pipeline: domain reconnaissance, source scraping and target enrichment."""

__version__ = "1.0.0"
