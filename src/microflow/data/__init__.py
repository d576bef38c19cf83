"""Exchange payload normalization."""
