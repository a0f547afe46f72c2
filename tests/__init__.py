"""
Call Router Tests

Running Tests:
    # Unit tests (no Redis, PostgreSQL or Twilio needed)
    pytest

    # Smoke tests against a running router
    pytest tests/e2e/smoke_test_e2e.py -v

Test Structure:
    - unit/: registry, selector, coordinator, orchestrator, telephony and
      HTTP/WebSocket routes with in-memory or mocked backends
    - e2e/: HTTP smoke tests against a live deployment
"""
