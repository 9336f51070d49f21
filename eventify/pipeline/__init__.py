"""
Image -> calendar event pipeline
"""

from .conflicts import find_conflicts
from .normalizer import normalize
from .orchestrator import EventPipeline, create_pipeline
from .persistence import PersistenceManager
from .steps import StepRunner
from .vision import extract_event_from_image

__all__ = [
    "EventPipeline",
    "PersistenceManager",
    "StepRunner",
    "create_pipeline",
    "extract_event_from_image",
    "find_conflicts",
    "normalize",
]
