"""
Container runtime backends.
"""
from .base import ContainerInfo, ContainerRuntime, ExecResult

RUNTIMES = ("docker", "process")


def create_runtime(kind: str, project_name: str, state_dir: str = ".ordo", base_dir: str = ".") -> ContainerRuntime:
    """
    Builds the runtime backend named ``kind``.

    :raises ValueError: If the backend is unknown.
    """
    if kind == "docker":
        from .docker_runtime import DockerRuntime
        return DockerRuntime(project_name)
    if kind == "process":
        from .process_runtime import ProcessRuntime
        return ProcessRuntime(project_name, state_dir=state_dir, base_dir=base_dir)
    raise ValueError(f"Unknown runtime: {kind}")


__all__ = ["ContainerInfo", "ContainerRuntime", "ExecResult", "RUNTIMES", "create_runtime"]
