"""nodewatch: health supervision and auto-recovery for an execution/consensus node pair."""

__version__ = "0.1.0"
