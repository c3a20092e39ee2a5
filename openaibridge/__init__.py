"""OpenAI-compatible HTTP bridge for local models with tagged tool-call output."""

__version__ = "0.1.0"
