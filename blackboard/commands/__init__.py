"""CLI command modules for blackboard."""
