"""Worker ID generation using coolnames for memorable identifiers."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "", index: int | None = None) -> str:
    """Generate a worker ID that is easy to follow through the logs.

    Args:
        prefix: Optional prefix, usually "{queue}-{role}" (e.g., "orders-processor")
        index: Position of the worker inside its pool, appended when given

    Returns:
        "prefix-word1-word2" with an optional "-N" pool suffix

    Examples:
        >>> generate_worker_id("orders-processor", 2)
        'orders-processor-brave-tiger-2'
    """
    parts = [p for p in (prefix, generate_slug(2)) if p]
    if index is not None:
        parts.append(str(index))
    return "-".join(parts)
