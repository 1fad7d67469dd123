"""Packed transaction time.

A transaction time packs the unix timestamp (seconds) with a per-user
sequence number in the three low-order decimal digits::

    packed = unix_time * 1000 + sequence      # 0 <= sequence <= 999

Packed values are unique per user, so they double as a stable, time-ordered
pagination key even when several transactions share the same wall-clock
second.
"""

SEQUENCE_SPAN = 1000
MAX_SEQUENCE = SEQUENCE_SPAN - 1


def min_transaction_time(unix_time: int) -> int:
    return unix_time * SEQUENCE_SPAN


def max_transaction_time(unix_time: int) -> int:
    return unix_time * SEQUENCE_SPAN + MAX_SEQUENCE


def unix_time_from_transaction_time(transaction_time: int) -> int:
    return transaction_time // SEQUENCE_SPAN


def sequence_from_transaction_time(transaction_time: int) -> int:
    return transaction_time % SEQUENCE_SPAN
