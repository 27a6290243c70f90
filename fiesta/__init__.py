"""AI Fiesta: one prompt, many chat backends, normalized answers."""

__version__ = "0.1.0"
