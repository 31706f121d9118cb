"""Database module initialization."""
