"""Built-in periodic trigger for the watch command."""

from .periodic import RecoveryScheduler

__all__ = ["RecoveryScheduler"]
