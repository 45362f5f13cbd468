"""Administrative HTTP surface for the backup subsystem."""

from .routes import create_app, run_server

__all__ = ["create_app", "run_server"]
