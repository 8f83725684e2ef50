from __future__ import annotations

import uuid


def new_id() -> str:
    """Random identifier for rules, events and notification logs."""
    return str(uuid.uuid4())
