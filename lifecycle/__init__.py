"""User lifecycle tracking: events, stages, scores, segments and analytics."""

__version__ = "1.0.0"
