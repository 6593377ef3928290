#!/usr/bin/env python3
"""
Inspect the bot's persisted state file.

Prints the last seen mention, the cached account id and, per resource, the
remaining quota and time until the server window resets. Read-only: a corrupt
file is reported, never moved aside.

Exit codes:
    0 - State file present and valid
    1 - Missing or unreadable state file

Usage:
    python scripts/check_state.py
    python scripts/check_state.py --state-file /data/bot-state.json
"""

import argparse
import sys
from datetime import datetime, timezone
from pathlib import Path


def check_state(state_file: str) -> bool:
    """
    Print a summary of state_file.

    Returns:
        True if the file exists and parses, False otherwise.
    """
    from pydantic import ValidationError

    from mention_bot.state_store import PersistentState, StateStore

    path = Path(state_file)
    if not path.exists():
        print(f"MISSING: No state file at {path}")
        print("   The bot has not run yet or has no persistent storage.")
        return False

    try:
        PersistentState.model_validate_json(path.read_text(encoding="utf-8"))
    except (OSError, ValueError, ValidationError) as e:
        print(f"UNREADABLE: {path} - {e}")
        return False

    store = StateStore(path)
    store.load()
    summary = store.summary()

    print("Bot State")
    print("=" * 40)
    print(f"   Last Mention ID: {summary['last_seen_mention_id'] or 'None'}")
    print(f"   Account ID:      {summary['cached_account_id'] or 'Not cached'}")
    print(f"   Last Poll Time:  {summary['last_poll_time'] or 'Never'}")
    print(f"   Last Updated:    {summary['last_updated'] or 'Unknown'}")

    print("\nResources")
    print("=" * 40)
    for resource, info in summary["resources"].items():
        remaining = info["remaining"] if info["remaining"] is not None else "Unknown"
        print(f"   {resource}: {remaining} remaining (ceiling {info['ceiling']})")
        if info["reset_at"]:
            if info["seconds_until_reset"] > 0:
                minutes = -(-info["seconds_until_reset"] // 60)
                print(f"      resets at {info['reset_at']} (in {minutes} min)")
            else:
                print("      window should be reset now")

    print(f"\nCurrent time (UTC): {datetime.now(timezone.utc).isoformat()}")
    return True


if __name__ == "__main__":
    sys.path.append(str(Path(__file__).parent.parent))

    parser = argparse.ArgumentParser(description="Inspect Mention Bot state")
    parser.add_argument("--state-file", help="Path to the state file (default: STATE_FILE setting)")
    args = parser.parse_args()

    if args.state_file:
        target = args.state_file
    else:
        from config import settings
        target = settings.state_file

    sys.exit(0 if check_state(target) else 1)
