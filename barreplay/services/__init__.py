"""Business logic services for barreplay."""
