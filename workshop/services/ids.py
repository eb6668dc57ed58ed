import uuid


def new_id(prefix: str) -> str:
    """Globally unique id, prefixed by entity kind (``project_…``, ``asset_…``)."""
    return f"{prefix}_{uuid.uuid4().hex}"
