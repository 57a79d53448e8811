"""Infrastructure layer package.

Implements Port interfaces with concrete adapters (in-memory, PostgreSQL,
event outbox). The lifecycle layer MUST NOT import from this package directly.
"""
