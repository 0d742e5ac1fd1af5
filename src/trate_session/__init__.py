"""
trate-session: a single-conversation session manager with rolling summarization.
"""

__version__ = "0.1.0"
