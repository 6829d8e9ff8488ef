"""
Agents module: agent definitions and engine builders.
"""

from .builder import (
    build_agent_engine,
    build_multi_agent_engine,
    create_compression_store,
    create_governor,
)
from .definition import AgentDefinition, discover_agent_definitions, parse_agent_file

__all__ = [
    "AgentDefinition",
    "build_agent_engine",
    "build_multi_agent_engine",
    "create_compression_store",
    "create_governor",
    "discover_agent_definitions",
    "parse_agent_file",
]
