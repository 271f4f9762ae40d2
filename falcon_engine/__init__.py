# CUI // SP-CTI
"""Falcon attribution and pattern-lifecycle engine.

Classifies why guidance failed for a confirmed review finding, stores the
bad guidance as deduplicated patterns, scores and promotes them, and
selects warnings for injection into the next task's context.
"""

__version__ = "0.1.0"
