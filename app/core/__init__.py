"""Core Business Logic Module

This module provides the bulk administration logic for PingOne,
independent of the Flask layer.

Architecture:
    - Pure Python (no Flask dependencies in core logic)
    - Threads for concurrency (request queues, per-session event queues)
    - Reusable across interfaces (HTTP API, CLI)

Module Structure:
    - pingone/          : Token provider, HTTP gateway, user/population services
    - bulk/             : Session state machine, progress channel, orchestrator
    - request_queue.py  : Bounded, prioritised request queue
    - backoff.py        : Exponential backoff shared by gateway, tokens and consumer
    - csv_records.py    : CSV parsing and column mapping
    - progress_client.py: Progress stream consumer (CLI, tests)

Usage Pattern:
    These modules are NOT auto-imported. Import explicitly when needed:
        from app.core.pingone import TokenProvider, PingOneClient
        from app.core.bulk.orchestrator import BulkOrchestrator
        from app.core.request_queue import RequestQueue
"""
