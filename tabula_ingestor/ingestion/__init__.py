"""Streaming ingestion pipeline: provenance, batching, batch processing and error handling."""
