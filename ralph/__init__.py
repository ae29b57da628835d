"""
Ralph - Resumable session orchestration for autonomous coding agents.

This package drives an external coding agent through the tasks of a session's
implementation plan, checkpointing progress after every completed task so that
crashes, transient network failures and interruptions never lose state.
"""

__version__ = "0.1.0"
