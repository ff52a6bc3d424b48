"""Text extraction and chunking."""
