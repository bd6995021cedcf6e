"""
blackboard - SQLite-backed coordination layer for Claude Code agents
"""

__version__ = "0.3.0"
