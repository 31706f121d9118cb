"""CareFlow voice-note handoff pipeline."""

__version__ = "1.0.0"
