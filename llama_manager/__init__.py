"""
Llama Manager

Control plane for a single llama-server instance: durable model presets,
engine lifecycle (router and single-preset modes) and an OpenAI/Anthropic
compatible proxy that restarts the engine when a request needs different
launch parameters.
"""

__version__ = "1.0.0"
