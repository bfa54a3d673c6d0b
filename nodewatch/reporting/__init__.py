"""Operator-facing text reports."""

from .report import StatusRenderer, format_bytes, format_duration, render_container_states

__all__ = ["StatusRenderer", "format_duration", "format_bytes", "render_container_states"]
