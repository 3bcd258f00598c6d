"""Model adapters, tools and the agent loop."""
