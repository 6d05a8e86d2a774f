"""
Storyloom: generation pipeline and session state machinery for illustrated stories.

Drives an interactive story session through its lifecycle and turns the
finished story into an artifact by sequencing long-running generation stages
that survive disconnects, duplicate triggers, and upstream rate limits.
"""

__version__ = "0.3.0"
