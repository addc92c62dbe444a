"""Container runtime detection for Docker and Podman.

Detects the available container runtime used to run template projects packaged
as container images.

Examples:
    Basic usage::

        from scaffoldkit.runtime_helper import get_container_runtime

        runtime = get_container_runtime()
        # Returns: 'docker' or 'podman'
"""

import os
import platform
import shutil
import subprocess

SUPPORTED_RUNTIMES = ("docker", "podman")

# Module-level cache for the detected runtime
_cached_runtime: str | None = None


def get_container_runtime(preference: str | None = "auto") -> str:
    """Get the container runtime executable name.

    Checks the CONTAINER_RUNTIME env var, then ``preference``; auto-detects when
    it is 'auto' or unset. The result is cached after the first detection.

    Args:
        preference: 'docker', 'podman' or 'auto'

    Returns:
        'docker' or 'podman'

    Raises:
        RuntimeError: If no running container runtime is found
    """
    global _cached_runtime

    if _cached_runtime is not None:
        return _cached_runtime

    env_runtime = os.getenv("CONTAINER_RUNTIME")
    if env_runtime:
        preference = env_runtime

    if preference and preference.lower() in SUPPORTED_RUNTIMES:
        runtimes_to_try = [preference.lower()]
    else:
        runtimes_to_try = list(SUPPORTED_RUNTIMES)

    for runtime in runtimes_to_try:
        if not shutil.which(runtime):
            continue

        try:
            # 'ps' only succeeds when the daemon (or podman service) is reachable
            result = subprocess.run([runtime, "ps"], capture_output=True, timeout=5)
        except (subprocess.TimeoutExpired, FileNotFoundError):
            continue

        if result.returncode == 0:
            _cached_runtime = runtime
            return runtime

    installed = [runtime for runtime in SUPPORTED_RUNTIMES if shutil.which(runtime)]
    if installed:
        messages = ["Container runtime installed but not running:\n"]
        messages.extend("\n" + _not_running_message(runtime) for runtime in installed)
        raise RuntimeError("".join(messages))

    raise RuntimeError(
        "No container runtime found. Install Docker Desktop 4.0+ or Podman 4.0+\n"
        "Docker: https://docs.docker.com/get-docker/\n"
        "Podman: https://podman.io/getting-started/installation"
    )


def reset_runtime_cache() -> None:
    global _cached_runtime
    _cached_runtime = None


def _not_running_message(runtime: str) -> str:
    system = platform.system()

    if runtime == "docker":
        if system in ("Darwin", "Windows"):
            return "Docker Desktop is not running. Start Docker Desktop and try again."
        return (
            "Docker daemon is not running.\n"
            "Start Docker: sudo systemctl start docker\n"
            "If permission issues, add user to docker group: sudo usermod -aG docker $USER"
        )

    if system in ("Darwin", "Windows"):
        return "Podman machine is not running. Start it with: podman machine start"
    return (
        "Podman service is not responding.\n"
        "Start it with: systemctl --user start podman.socket"
    )
