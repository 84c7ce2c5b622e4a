"""HTTP surface for the agent core."""
