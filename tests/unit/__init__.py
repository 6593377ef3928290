"""
Unit Tests Package.

Mock-based tests for single components: error translation, budgets,
allow lists, settings, the API clients (against httpx.MockTransport) and
the scheduler (against mocked collaborators).
"""
