"""Reference points: durable bases for differential exports."""

from ..checkpoints.models import ReferencePoint
from .manager import ReferencePointManager

__all__ = ["ReferencePoint", "ReferencePointManager"]
