"""
RALPH — Agentic Coding Loop

Drives an external coding agent through repeated, independent invocations
until it reports completion or the iteration budget runs out.
"""

from ralph.identity import __codename__, __tagline__, __version__

__all__ = ["__codename__", "__tagline__", "__version__"]
