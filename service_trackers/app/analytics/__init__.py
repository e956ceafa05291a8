"""Analytics shaping and cached insights."""
