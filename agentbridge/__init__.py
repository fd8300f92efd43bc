"""agentbridge: workspace-scoped sessions for agent CLIs over HTTP + SSE."""

__version__ = "0.1.0"
