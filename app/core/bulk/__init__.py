"""Bulk job orchestration: sessions, progress channels and the orchestrator.

Submodules are imported explicitly:
    from app.core.bulk.orchestrator import BulkOrchestrator
    from app.core.bulk.session import BulkSession, SessionState
    from app.core.bulk.channel import ChannelRegistry
"""
