"""
Allora topic inference sync.

Tracks active Allora topics, polls their latest network inferences, merges
the per-worker values into band-annotated records and keeps their history.
"""

__version__ = "1.0.0"
