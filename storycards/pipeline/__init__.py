from storycards.cards import CardGraph
from storycards.pipeline.auto_cards import AutoCardsScript
from storycards.pipeline.base import Script, ScriptOutput
from storycards.pipeline.possessions import PossessionScript
from storycards.pipeline.quests import QuestTrackingScript
from storycards.pipeline.runner import PipelineRun, ScriptLogEntry, ScriptPipeline, ScriptResult
from storycards.pipeline.story_memory import StoryMemoryScript


def default_pipeline(graph: CardGraph) -> ScriptPipeline:
    """The built-in stages, lowest order first."""
    pipeline = ScriptPipeline()
    pipeline.register(AutoCardsScript.name, AutoCardsScript(graph), 10)
    pipeline.register(StoryMemoryScript.name, StoryMemoryScript(), 20)
    pipeline.register(QuestTrackingScript.name, QuestTrackingScript(), 30)
    pipeline.register(PossessionScript.name, PossessionScript(), 40)
    return pipeline


__all__ = [
    "AutoCardsScript",
    "PipelineRun",
    "PossessionScript",
    "QuestTrackingScript",
    "Script",
    "ScriptLogEntry",
    "ScriptOutput",
    "ScriptPipeline",
    "ScriptResult",
    "StoryMemoryScript",
    "default_pipeline",
]
