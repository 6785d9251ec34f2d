"""HTTP API for notification management and delivery control."""
