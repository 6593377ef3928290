"""
Real Functionality Tests Package.

This package contains tests that verify actual component behavior,
not just mock interactions. Tests focus on:
- Deterministic logic with real function calls
- State machines with verifiable transitions
- Data transformations with expected outputs

Mock vs Real Strategy:
- Mock: External APIs (X API, AI provider) and time
- Real: Token buckets, retry decisions, state persistence, orchestration
"""
