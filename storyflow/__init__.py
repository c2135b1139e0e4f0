"""storyflow - dependency-aware scheduling for AI-assisted story delivery."""

__version__ = "0.1.0"
