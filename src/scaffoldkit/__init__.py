"""scaffoldkit: ephemeral template projects for integration tests.

Materializes a project from a scaffolding template into an isolated
directory, patches the generated sources, launches it as a managed child
process, waits until it is ready and tears everything down afterwards.

This package contains:
- Materializer and source patcher
- Process launcher and readiness prober
- Endpoint client services
- Lifecycle manager and pytest plugin
"""

# Version information
__version__ = "0.3.1"

__all__ = ["__version__"]

# Use specific imports like: from scaffoldkit.lifecycle import LifecycleManager
