from __future__ import annotations

import uuid


def new_generation_id() -> str:
    """Generate unique generation ID with prefix."""
    return f"gen_{uuid.uuid4().hex[:16]}"


def new_client_id() -> str:
    """Generate the client id used to scope inference server WebSocket traffic."""
    return uuid.uuid4().hex
