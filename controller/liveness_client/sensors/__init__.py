"""Local capture collaborators."""
