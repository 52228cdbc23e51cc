from .fanout import EventFanout, summarize_outcomes
from .pipeline import ConversationPipeline, PipelineOutcome, build_conversation_pipeline
from .window import WindowSelection, select_window

__all__ = [
    "EventFanout",
    "summarize_outcomes",
    "ConversationPipeline",
    "PipelineOutcome",
    "build_conversation_pipeline",
    "WindowSelection",
    "select_window",
]
