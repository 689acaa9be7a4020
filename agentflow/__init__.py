"""agentflow - drives multi-step agent plans to completion."""

__version__ = "0.1.0"
