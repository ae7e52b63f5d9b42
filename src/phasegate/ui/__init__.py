"""User interfaces: CLI router, plain-text renderer and status dashboard."""

from phasegate.ui.render import CLIRenderer, create_renderer

__all__ = ["CLIRenderer", "create_renderer"]
