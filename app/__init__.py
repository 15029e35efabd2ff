"""PingOne Bulk Admin Flask Application Package.

To create the Flask app:
    from app.flask_app import create_app

To use the PingOne services:
    from app.core.pingone import TokenProvider, PingOneClient, UserService
"""
# Note: We don't import flask_app by default to avoid Flask dependency
# for CLI scripts that only use app.core
