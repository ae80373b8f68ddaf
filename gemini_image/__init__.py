"""Multi-turn image generation and editing against Gemini/OpenAI-compatible endpoints."""

__version__ = "0.1.0"
