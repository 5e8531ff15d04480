"""Idempotency key minting for ranking mutation events."""

import hashlib


def compute_idempotency_key(
    user_id: str,
    dish_type: str,
    dish_id: str,
    mutation_type: str,
    request_nonce: str,
) -> str:
    """Compute the deterministic idempotency key of a logical request.

    Re-publishing the same request (same nonce) yields the same key, so
    downstream consumers apply it at most once.

    Args:
        user_id: Subject user.
        dish_type: Dish type of the scope (empty when not known).
        dish_id: Dish, or the ranking ID for mutations addressed by ranking.
        mutation_type: Event type value.
        request_nonce: Client-supplied request nonce.

    Returns:
        Hex-encoded SHA-256 digest.

    Examples:
        >>> key = compute_idempotency_key("u1", "ramen", "d1", "RANKING_CREATE", "n1")
        >>> key == compute_idempotency_key("u1", "ramen", "d1", "RANKING_CREATE", "n1")
        True
    """
    parts = [
        f"user_id:{user_id}",
        f"dish_type:{dish_type}",
        f"dish_id:{dish_id}",
        f"mutation_type:{mutation_type}",
        f"request_nonce:{request_nonce}",
    ]
    content = "\n".join(parts)
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
