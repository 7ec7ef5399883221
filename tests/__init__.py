"""
Keel Test Suite

This directory contains tests for the Keel system:
- Unit tests for resources, configuration, graph, differ and planner
- Executor tests for ordering, partial failure, idempotence and cancellation
- Integration tests for the full plan/apply/destroy pipeline and the CLI
"""
