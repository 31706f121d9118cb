"""Audio blob storage."""
