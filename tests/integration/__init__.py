"""
Integration Tests Package.

Runs the mention pipeline end to end with real components and a mocked
HTTP transport standing in for the X API and the AI provider.

Tests verify:
- Mention to reply flow, including marker persistence
- Behaviour across a process restart
- Rate limits, retries and credential failures crossing component boundaries
"""
