from course_nlu.config import NluSettings
from course_nlu.pipeline import DialoguePipeline, TurnResult, build_pipeline

__all__ = ["NluSettings", "DialoguePipeline", "TurnResult", "build_pipeline"]
