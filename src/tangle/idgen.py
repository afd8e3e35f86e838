"""Hash-based ID generation for issues.

IDs are allocated without coordination between writers: each writer hashes
its own local entropy with a writer-specific key, so two offline writers
creating the same title at the same moment still land on different IDs.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import os
import socket
import time
from collections.abc import Iterable

from tangle.constants import DEFAULT_PREFIX, ID_LENGTH_MAX, ID_LENGTH_THRESHOLDS

logger = logging.getLogger(__name__)

_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
_MAX_RETRIES = 100


def collision_probability(count: int, length: int, alphabet: int = 36) -> float:
    """Birthday-bound estimate of a collision among ``count`` random IDs.

    Args:
        count: Number of IDs drawn.
        length: Length of each ID's hash part.
        alphabet: Size of the alphabet the hash part is drawn from.

    Returns:
        Approximate probability ``count**2 / (2 * alphabet**length)``, capped at 1.
    """
    if count < 2:
        return 0.0
    return min(1.0, count * count / (2 * alphabet**length))


def length_for_count(issue_count: int, epsilon: float | None = None) -> int:
    """Determine the ID length for a store holding ``issue_count`` IDs.

    Progressive scaling keeps IDs short for small projects:
    - 4 characters for 0-500 issues
    - 5 characters for 501-1500 issues
    - 6 characters for 1501-5000 issues
    - 7 characters beyond that

    When ``epsilon`` is given the length keeps growing until the birthday
    bound for ``issue_count`` falls below it.

    Args:
        issue_count: Current number of known IDs, tombstoned ones included.
        epsilon: Optional upper bound on the collision estimate.

    Returns:
        Appropriate ID length.
    """
    length = ID_LENGTH_MAX
    for max_count, tier_length in ID_LENGTH_THRESHOLDS:
        if issue_count <= max_count:
            length = tier_length
            break
    if epsilon is not None:
        while collision_probability(issue_count, length) >= epsilon:
            length += 1
    return length


def _base36_encode(data: bytes) -> str:
    """Encode bytes as base36 (0-9, a-z), least significant digit first."""
    num = int.from_bytes(data, byteorder="big")
    if num == 0:
        return "0"

    result: list[str] = []
    while num:
        num, rem = divmod(num, 36)
        result.append(_ALPHABET[rem])
    return "".join(result)


def writer_key(writer: str | None = None) -> bytes:
    """Derive the HMAC key identifying this writer.

    Args:
        writer: Writer identity (usually the git user email). The hostname
            is mixed in so two checkouts of the same user still differ.
    """
    identity = f"{writer or ''}@{socket.gethostname()}:{os.getpid()}"
    return hashlib.sha256(identity.encode()).digest()


def generate_hash_id(
    input_data: str,
    *,
    key: bytes = b"",
    nonce: str = "",
    length: int = 4,
) -> str:
    """Generate the hash part of an ID from input data.

    Args:
        input_data: Entropy or seed to hash
        key: HMAC key (writer identity)
        nonce: Optional nonce to handle collisions (empty string for first attempt)
        length: Desired length of the hash portion

    Returns:
        Hash string (just the hash portion, no prefix)
    """
    digest = hmac.new(key, (input_data + nonce).encode(), hashlib.sha256).digest()
    return _base36_encode(digest)[:length]


def _local_entropy(existing_count: int) -> str:
    return f"{time.time_ns()}:{os.urandom(16).hex()}:{existing_count}"


def allocate_id(
    existing_ids: Iterable[str],
    *,
    prefix: str = DEFAULT_PREFIX,
    writer: str | None = None,
    seed: str | None = None,
    epsilon: float | None = None,
) -> str:
    """Allocate a new issue ID that is not in ``existing_ids``.

    Safe to call without coordinating with other writers. ``existing_ids``
    must include tombstoned IDs so deleted IDs are never handed out again.

    Args:
        existing_ids: Full IDs already known to this store.
        prefix: ID prefix (e.g. "tg").
        writer: Writer identity used to key the hash.
        seed: Replaces the random entropy so the result is reproducible.
            The merge resolver uses this so both merge directions
            re-allocate a colliding record to the same ID.
        epsilon: Optional collision bound passed to :func:`length_for_count`.

    Returns:
        A full ID of the form ``{prefix}-{hash}``.
    """
    taken = existing_ids if isinstance(existing_ids, (set, frozenset)) else set(existing_ids)
    length = length_for_count(len(taken), epsilon)
    key = b"" if seed is not None else writer_key(writer)
    input_data = seed if seed is not None else _local_entropy(len(taken))

    for attempt in range(_MAX_RETRIES):
        nonce = "" if attempt == 0 else str(attempt)
        candidate = f"{prefix}-{generate_hash_id(input_data, key=key, nonce=nonce, length=length)}"
        if candidate not in taken:
            return candidate

    # Standard length exhausted, try a longer ID
    fallback_length = length + 2
    attempt = 0
    while True:
        nonce = f"x{attempt}"
        candidate = f"{prefix}-{generate_hash_id(input_data, key=key, nonce=nonce, length=fallback_length)}"
        if candidate not in taken:
            logger.debug("Allocated fallback-length id %s", candidate)
            return candidate
        attempt += 1

