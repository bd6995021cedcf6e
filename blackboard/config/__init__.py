"""Configuration for blackboard: defaults in ``constants``, path/env resolution in ``settings``."""
