"""Platform services: errors, audit, health."""
