"""
Assembly module for the keel project.

This module contains the graph, diffing and planning logic for converting
declared resources plus the last state snapshot into an ordered plan.
"""

from .differ import Action, FieldChange, ResourceDiff, compute_diff
from .graph import DependencyGraph, GraphNode, compute_depths, find_cycle
from .planner import Operation, Plan, PlanStep, build_destroy_plan, build_plan

__all__ = [
    # Graph exports
    "DependencyGraph",
    "GraphNode",
    "compute_depths",
    "find_cycle",
    # Differ exports
    "Action",
    "FieldChange",
    "ResourceDiff",
    "compute_diff",
    # Planner exports
    "Operation",
    "Plan",
    "PlanStep",
    "build_plan",
    "build_destroy_plan",
]
