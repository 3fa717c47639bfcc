"""
Assignments module: per-course work items with an optional due date and a point ceiling.
"""

