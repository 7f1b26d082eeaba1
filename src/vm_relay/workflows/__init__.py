"""Multi-step VM workflows executed by the engine."""
