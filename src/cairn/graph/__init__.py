"""
Dependency graph.

Components:
- engine.py: readiness, closability, completion, cycle-safe edge edits
- analysis.py: epics/subtasks, cycle detection, implementation order
"""
