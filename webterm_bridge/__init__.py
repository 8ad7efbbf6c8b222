"""WebTerm Bridge: tmux-backed terminal sessions shared over WebSocket."""

__version__ = "0.1.0"
