"""Test suite for cage-monitor.

This package contains unit and integration tests for all cage-monitor components:

- ``test_models``: Hook types, event and payload schemas, query schema.
- ``test_config``: Config file discovery and path resolution.
- ``test_normalizer``: Per-hook payload normalization.
- ``test_forwarder``: Hook forwarding against a mocked collector.
- ``test_store``: JSONL partition appends and reads.
- ``test_event_bus``: Live event fan-out.
- ``test_query``: Filtering, pagination and statistics.
- ``test_api``: FastAPI endpoint tests for ingestion, query, SSE and health.
- ``test_lifecycle``: Starting and stopping the detached collector.
- ``test_cli``: The ``cage`` command line.
"""
