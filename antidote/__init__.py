"""
Antidote client - async access to the Antidote music-analytics backend.
"""

__version__ = "0.1.0"
