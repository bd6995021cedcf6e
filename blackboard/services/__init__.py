"""Service modules for blackboard.

- auth: resolve the credential handed to spawned agents
- images: make sure the worker image exists, building it when needed
- farm: the fleet orchestrator (bounded-concurrency work queue)
- drone_ops: drone session launch and stop
- worker_ops: drain and kill
"""
