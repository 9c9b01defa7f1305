"""Read-only status API for a pipeline run.

Serves the status document and the orchestrator log over HTTP.
"""

from .main import create_app, run_server

__all__ = ["create_app", "run_server"]
