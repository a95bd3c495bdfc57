"""
Experiment Auto-Promotion Engine.

Decides when an A/B experiment variant has won decisively enough to take
all traffic, gates the decision behind statistical and operational safety
checks, executes the promotion with a full audit trail and supports
rollback.
"""

__version__ = "1.0.0"
