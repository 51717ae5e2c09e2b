from __future__ import annotations

import uuid


def is_uuid(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    try:
        uuid.UUID(value)
        return True
    except ValueError:
        return False


def new_id() -> str:
    return str(uuid.uuid4())
