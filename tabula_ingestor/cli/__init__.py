"""Command line interface for tabula_ingestor."""
