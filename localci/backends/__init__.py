"""Execution backends."""

from .base import ExecutionBackend, BackendState, JobEnvironment, TIMEOUT_EXIT_CODE, AUTHORING_ERROR_TYPES
from .host import HostBackend, HostCommandRunner
from .container import ContainerBackend, DockerCli, ImageMapper, CONTAINER_WORKSPACE

__all__ = [
    'ExecutionBackend',
    'BackendState',
    'JobEnvironment',
    'TIMEOUT_EXIT_CODE',
    'AUTHORING_ERROR_TYPES',
    'HostBackend',
    'HostCommandRunner',
    'ContainerBackend',
    'DockerCli',
    'ImageMapper',
    'CONTAINER_WORKSPACE',
    'create_backend',
]


def create_backend(name: str, **kwargs) -> ExecutionBackend:
    """Create a backend by name ("host" or "container")."""
    if name == "host":
        return HostBackend(**kwargs)
    if name in ("container", "docker"):
        return ContainerBackend(**kwargs)
    raise ValueError(f"Unknown backend '{name}'. Expected 'host' or 'container'")
