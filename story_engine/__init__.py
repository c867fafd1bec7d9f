"""Narrative-generation core for interactive storytelling.

Given a story's accumulated state, the engine picks the world context worth
sending to the model (context), compresses old history into chapters
(memory), gathers supplementary context concurrently (retrieval), runs the
cancellable generation pipeline (pipeline), and lets agents propose world
edits as reviewable pending changes (agents, lore, vault, approval).
"""
