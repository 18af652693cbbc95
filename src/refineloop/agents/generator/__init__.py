"""Generator - produces candidate artifacts."""

from .agent import Generation, Generator

__all__ = ["Generation", "Generator"]
