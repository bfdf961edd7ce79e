"""Tool Engine — declarative HTTP API tools: build, execute, cache, and health-check per tenant."""

__version__ = "0.1.0"
