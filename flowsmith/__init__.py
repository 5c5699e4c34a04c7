"""Flowsmith - Workflow Graph Runtime.

Runs automation graphs (one trigger, many actions/conditions/transforms)
interactively or compiles them to standalone Python source.
"""

__version__ = "0.1.0"
