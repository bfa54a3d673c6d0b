"""Container engine access: state probe and ordered stop/start sequencing."""

from .docker_cli import DockerCLI
from .sequencer import ShutdownResult, ShutdownSequencer, StartupResult, StartupSequencer

__all__ = ["DockerCLI", "ShutdownSequencer", "ShutdownResult", "StartupSequencer", "StartupResult"]
