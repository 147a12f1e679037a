"""Tools package - agent-facing tool registry and RAG tools."""
from workspace_rag.tools.registry import Tool, ToolResult, ToolRegistry
from workspace_rag.tools.rag_tools import build_registry, create_default_registry

__all__ = ["Tool", "ToolResult", "ToolRegistry", "build_registry", "create_default_registry"]
