"""RefineLoop - iterative generate/evaluate refinement with LLM providers."""

__version__ = "0.1.0"
