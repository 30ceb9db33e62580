"""Task lifecycle and AI-assisted quality-gate pipeline engine."""

__version__ = "0.3.0"
