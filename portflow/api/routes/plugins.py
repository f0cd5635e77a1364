"""
Plugin API Routes.

Endpoints for listing node types and registering scripted plugins.
"""

from typing import Optional
from fastapi import APIRouter, HTTPException, status
import logging

from portflow.api.schemas import (
    ErrorResponse,
    PluginInfo,
    PluginListResponse,
    PluginRegisterResponse,
)
from portflow.engine.ports import PluginDescriptor
from portflow.engine.registry import plugin_registry
from portflow.engine.sandbox import SandboxError
from portflow.plugins.scripted import ScriptedPluginSpec, build_scripted_plugin


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/plugins", tags=["Plugins"])

# Node types the engine itself relies on
PROTECTED_PLUGINS = {"trigger", "webhook_trigger", "transform"}


def _plugin_info(descriptor: PluginDescriptor) -> PluginInfo:
    return PluginInfo(is_trigger=descriptor.is_trigger, **descriptor.to_dict())


@router.get(
    "/",
    response_model=PluginListResponse,
)
async def list_plugins(category: Optional[str] = None) -> PluginListResponse:
    """
    List all registered plugins.

    Every plugin is a node type the editor can place on the canvas.
    """
    if category:
        plugins = plugin_registry.get_by_category(category)
    else:
        plugins = plugin_registry.get_all()

    infos = [_plugin_info(p) for p in plugins]
    return PluginListResponse(plugins=infos, total=len(infos))


@router.get(
    "/{plugin_id}",
    response_model=PluginInfo,
    responses={404: {"model": ErrorResponse}},
)
async def get_plugin(plugin_id: str) -> PluginInfo:
    """Get information about a specific plugin."""
    descriptor = plugin_registry.get(plugin_id)
    if not descriptor:
        raise HTTPException(
            status_code=404,
            detail=f"Plugin '{plugin_id}' not found"
        )
    return _plugin_info(descriptor)


@router.post(
    "/scripted",
    response_model=PluginRegisterResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid plugin script"},
    }
)
async def register_scripted_plugin(request: ScriptedPluginSpec) -> PluginRegisterResponse:
    """
    Register a plugin whose outputs are computed by sandboxed expressions.

    Each entry of `expressions` maps an output port id to an expression
    over `inputs` and `data`. Expressions are parsed and checked against a
    whitelist; no code is executed at registration time.
    """
    if request.id in PROTECTED_PLUGINS:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot replace built-in plugin '{request.id}'"
        )

    try:
        descriptor = build_scripted_plugin(request)
    except SandboxError as e:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid plugin script: {e}"
        )

    replaced = plugin_registry.has(request.id)
    plugin_registry.register(descriptor)

    logger.info(f"Registered scripted plugin: {request.id}")

    return PluginRegisterResponse(
        id=request.id,
        message=f"Plugin '{request.id}' registered successfully",
        replaced=replaced,
    )


@router.delete(
    "/{plugin_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={404: {"model": ErrorResponse}},
)
async def delete_plugin(plugin_id: str):
    """Remove a registered plugin."""
    if plugin_id in PROTECTED_PLUGINS:
        raise HTTPException(
            status_code=400,
            detail=f"Cannot delete built-in plugin '{plugin_id}'"
        )

    if not plugin_registry.remove(plugin_id):
        raise HTTPException(
            status_code=404,
            detail=f"Plugin '{plugin_id}' not found"
        )

    logger.info(f"Deleted plugin: {plugin_id}")
