"""
Test helpers for reading what the broadcaster queued.
"""

from typing import Any, Dict, List


def drain(session) -> List[Dict[str, Any]]:
    """Pop every queued envelope from a session outbox."""
    messages = []
    while not session.outbox.empty():
        message = session.outbox.get_nowait()
        if message is not None:
            messages.append(message)
    return messages


def of_type(messages: List[Dict[str, Any]], event: str) -> List[Any]:
    return [m["data"] for m in messages if m["type"] == event]


def last_error(session) -> str:
    errors = of_type(drain(session), "error_message")
    assert errors, "expected an error_message"
    return errors[-1]["text"]
