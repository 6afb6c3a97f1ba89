"""Workitem queue worker with side-effect artifact discovery."""

__version__ = "0.1.0"
