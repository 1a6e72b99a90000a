"""Worker ID generation using coolnames for unique, memorable identifiers."""

from coolname import generate_slug


def generate_worker_id(prefix: str = "") -> str:
    """
    Generate a human-readable worker id, e.g. ``relay-brave-golden-tiger``.

    Used as the consumer instance id when none is configured, so several
    replicas in one consumer group are distinguishable in logs.
    """
    coolname_id = generate_slug(3)

    if prefix:
        return f"{prefix}-{coolname_id}"

    return coolname_id
