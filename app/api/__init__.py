"""HTTP blueprints and error handlers."""
