"""
gtllm: play several LLMs against each other.

Orchestration core for the gtllm desktop chat app: a streaming OpenRouter
client, five game-theoretic chat modes, session persistence and a cached
Markdown segmenter for incremental rendering.
"""

__version__ = "0.4.0"
