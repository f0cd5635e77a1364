"""
PortFlow - FastAPI Application Entry Point.

A port-based workflow execution engine: typed plugins, data flowing
along edges, runs started by hand or by webhooks.
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import logging

from portflow.config import settings
from portflow.api.routes import plugins, runs, webhooks, workflows
from portflow.api.runtime import supervisor
from portflow.engine.registry import plugin_registry
from portflow.plugins.builtin import register_builtin_plugins
from portflow.workflows.demo import DEMO_WORKFLOW_ID, register_hello_workflow


# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    # Startup
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    register_builtin_plugins(plugin_registry, replace=False)
    await register_hello_workflow()

    yield

    # Shutdown
    for run in supervisor.active_runs():
        supervisor.cancel_run(run.id, reason="Server shutting down")
    logger.info("Shutting down...")


# Create FastAPI application
app = FastAPI(
    title=settings.APP_NAME,
    description="""
## Workflow Execution API

Executes workflow graphs built in the visual editor.

### Concepts
- **Plugins**: node types with typed input and output ports
- **Edges**: connect an output port to an input port
- **Triggers**: plugins without inputs; a run starts at one of them
- **Webhooks**: start a saved workflow from an HTTP request

### Quick Start
1. List node types: `GET /plugins`
2. Save a workflow: `POST /workflows`
3. Run it: `POST /workflows/{workflow_id}/run`
4. Check the run: `GET /runs/{run_id}`

### Demo Workflow
A pre-registered Hello workflow is available with ID: `hello-demo`
    """,
    version=settings.APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Include routers
app.include_router(plugins.router)
app.include_router(workflows.router)
app.include_router(runs.router)
app.include_router(webhooks.router)


# ============================================================
# Root Endpoints
# ============================================================

@app.get("/", tags=["Root"])
async def root():
    """API root - returns basic info and links."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": "A port-based workflow execution engine",
        "docs": "/docs",
        "redoc": "/redoc",
        "endpoints": {
            "plugins": "/plugins",
            "workflows": "/workflows",
            "runs": "/runs",
            "webhooks": "/webhooks/{webhook_id}",
        },
        "demo_workflow": DEMO_WORKFLOW_ID,
    }


@app.get("/health", tags=["Root"])
async def health():
    """Health check endpoint."""
    from portflow.storage.memory import run_archive, webhook_bindings, workflow_storage

    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "plugins_count": len(plugin_registry),
        "workflows_count": len(workflow_storage),
        "active_runs": len(supervisor.active_runs()),
        "archived_runs": len(run_archive),
        "webhooks_count": len(webhook_bindings),
    }


# ============================================================
# Error Handlers
# ============================================================

@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler for unhandled errors."""
    logger.exception(f"Unhandled error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "detail": str(exc) if settings.DEBUG else "An unexpected error occurred",
        },
    )
