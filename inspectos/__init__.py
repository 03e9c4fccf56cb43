"""
InspectOS — recurring inspection scheduling core.

Check templates become scheduled inspection tasks; submitted results move
tasks through their lifecycle, and abnormal results escalate into tracked
hazards.
"""

__version__ = "1.0.0"
__all__ = ["api", "db", "engine", "lifecycle", "scheduling"]
