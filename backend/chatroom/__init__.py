"""Real-time group chat room server."""
