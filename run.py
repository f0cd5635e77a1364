#!/usr/bin/env python3
"""
Run script for PortFlow.

Usage:
    python run.py

Or with custom settings:
    HOST=127.0.0.1 PORT=8080 RELOAD=false python run.py
"""

import os

import uvicorn

from portflow.config import settings


def main():
    """Run the FastAPI application."""
    reload = os.getenv("RELOAD", "true").lower() == "true"

    print(f"{settings.APP_NAME} v{settings.APP_VERSION}")
    print(f"  Server:    http://{settings.HOST}:{settings.PORT}")
    print(f"  API Docs:  http://{settings.HOST}:{settings.PORT}/docs")
    print("  Demo workflow ID: hello-demo")

    uvicorn.run(
        "portflow.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=reload,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
