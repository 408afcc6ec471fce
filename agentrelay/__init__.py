"""agentrelay - task execution, context propagation and real-time events for chat agents."""

__version__ = "0.1.0"
