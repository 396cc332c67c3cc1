"""Request middleware and dependencies shared across routes."""
