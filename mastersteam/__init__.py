"""
mastersteam - Steam master server search and A2S server queries.
"""

__version__ = "1.0.0"
