"""
API package - FastAPI routes and schemas.
"""

from portflow.api.routes import plugins, runs, webhooks, workflows

__all__ = ["plugins", "runs", "webhooks", "workflows"]
