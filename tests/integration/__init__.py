"""
Integration tests for livemigrate.

SQLite tests run against temporary database files and need no services.
PostgreSQL tests need a reachable server named by LIVEMIGRATE_TEST_POSTGRES
(a URL such as ``postgresql://svc:pw@localhost:5432/app``) and are
skipped otherwise.

Run integration tests:
    pytest tests/integration/ -v

Run only PostgreSQL tests:
    pytest tests/integration/ -v -m postgres

Skip integration tests:
    pytest tests/ -v -m "not integration"
"""
