from .base import BaseAgent, FunctionAgent

__all__ = ["BaseAgent", "FunctionAgent"]
