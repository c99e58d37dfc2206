"""
Runtime module - query planning and AST execution.
"""

from __future__ import annotations

from .ast import AST, A2ONode, FieldNode, NestedCollectionNode
from .context import Accountability, Permission
from .executor import ASTRunner, run_ast
from .planner import QueryPlanner, build_ast

__all__ = [
    "AST",
    "A2ONode",
    "FieldNode",
    "NestedCollectionNode",
    "Accountability",
    "Permission",
    "ASTRunner",
    "run_ast",
    "QueryPlanner",
    "build_ast",
]
