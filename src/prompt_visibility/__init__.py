"""Brand visibility tracking: batch runs of prompts across LLM providers."""

__version__ = "0.1.0"
