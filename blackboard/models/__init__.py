"""Data models for blackboard entities.

- workers: Worker records and the WorkerRegistry
- threads: read-only view of threads and their plans (the farm's work source)
- drones: Drone definitions, drone sessions and the worker event log
"""
