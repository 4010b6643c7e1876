"""Context and working-memory management for long-running agent conversations."""

from ahura_context.context import ContextEngine, ContextEngineRegistry

__version__ = "0.1.0"

__all__ = ["ContextEngine", "ContextEngineRegistry", "__version__"]
