"""Operational scripts: signed audit trail and the bulk CLI."""
