"""Identifiers for sessions, rating events and log runs."""

from ulid import ULID


def generate_session_token() -> str:
    return f"sess_{ULID()}"


def generate_event_id() -> str:
    """Rating event ids sort by creation time, which keeps the log append-ordered."""
    return f"evt_{ULID()}"


def generate_run_id() -> str:
    return str(ULID())


def generate_flag_id() -> str:
    return f"flag_{ULID()}"
