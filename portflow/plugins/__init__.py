"""
Plugins package - Built-in node types and scripted plugin support.
"""

from portflow.plugins.builtin import register_builtin_plugins
from portflow.plugins.scripted import ScriptedPluginSpec, build_scripted_plugin

__all__ = [
    "register_builtin_plugins",
    "ScriptedPluginSpec",
    "build_scripted_plugin",
]
