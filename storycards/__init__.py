"""Story Cards: card-driven interactive fiction on top of chat LLMs.

Cards (worlds, locations, characters, times, moods) form a multi-parent DAG.
Each turn the active cards are composed into one system prompt, the model
writes the next passage, and a pipeline of heuristic scripts updates memory,
quests and inventory from the result.
"""

__version__ = "0.1.0"
