"""EduChain certificate lifecycle and dual-source verification."""

__version__ = "0.3.0"
