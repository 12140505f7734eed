"""Gradio UI for TutorChat."""

from .app import BrowserChat, QueueRenderer, build_interface, default_factory, launch

__all__ = ["BrowserChat", "QueueRenderer", "build_interface", "default_factory", "launch"]
