"""
Tests for the ticketflow workflow engine.

Layout:
    conftest.py         shared fixtures (mongomock repositories, MockTransport
                        channels, wired engine, demo support workflow)
    unit/engine/        condition evaluator, templates, sandbox, action
                        pipeline, executor, definition store, history
    unit/services/      workflow admin service, assignment, SLA, channels
    integration/        FastAPI routes through TestClient
"""
