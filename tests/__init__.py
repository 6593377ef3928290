"""
Test Suite for Mention Bot.

Structure:
    tests/
    ├── conftest.py          # Shared fixtures and configuration
    ├── unit/                # Mock-based unit tests
    │   ├── test_errors.py
    │   ├── test_allow_list.py
    │   ├── test_ai_client.py
    │   ├── test_mention_source.py
    │   ├── test_reply_poster.py
    │   ├── test_rate_limiter.py
    │   ├── test_settings.py
    │   └── test_scheduler.py
    ├── integration/         # Integration tests (mocked external APIs)
    │   └── test_pipeline.py
    └── real/                # Real functionality tests
        ├── test_rate_limiter_real.py
        ├── test_retry_real.py
        ├── test_state_store_real.py
        └── test_bot_orchestration_real.py

Run tests:
    pytest tests/                    # All tests
    pytest tests/unit/               # Unit tests only
    pytest tests/real/               # Real functionality tests only
    pytest tests/integration/        # Integration tests only
    pytest tests/ -m real            # Tests marked @pytest.mark.real
"""
