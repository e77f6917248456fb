"""
specloop - Autonomous spec-driven build loop.

This package drives a coding agent (Claude Code) iteration by iteration
against a structured task spec, selecting work under a size budget and
stopping when the spec is complete or the loop is stuck.
"""

__version__ = "0.1.0"
