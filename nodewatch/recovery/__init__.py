"""Recovery pass: decision state machine and re-entrancy lease."""

from .controller import ControllerState, RecoveryController, decide
from .lease import RecoveryLease

__all__ = ["RecoveryController", "ControllerState", "decide", "RecoveryLease"]
