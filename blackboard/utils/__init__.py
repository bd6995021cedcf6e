"""Utility modules for blackboard.

- ids: worker/session id generation and short display ids
- logging_utils: CLI logging setup (rotating file + stderr)
- output: shared rich console and JSON output
- retry: exponential backoff for retryable errors (e.g. a busy database)
"""
