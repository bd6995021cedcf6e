"""Container runtime adapter."""

from .docker import (
    ContainerInfo,
    ContainerOptions,
    ContainerState,
    DockerRuntime,
    ReconcileResult,
)

__all__ = [
    "ContainerInfo",
    "ContainerOptions",
    "ContainerState",
    "DockerRuntime",
    "ReconcileResult",
]
