"""Application services and orchestrators."""
