from __future__ import annotations

import os
import random
import string
import time
import uuid


def generate_uuid7() -> str:
    """
    Generate a UUIDv7 string (time-ordered).

    Stage events and audit rows use these so that ids sort roughly in
    insertion order even across processes.

    Layout:
    - 48-bit Unix timestamp in milliseconds
    - 4-bit version (0b0111)
    - 2-bit variant (0b10)
    - remaining bits random
    """
    millis = int(time.time() * 1000)
    raw = bytearray(millis.to_bytes(6, "big", signed=False) + os.urandom(10))
    raw[6] = (raw[6] & 0x0F) | 0x70
    raw[8] = (raw[8] & 0x3F) | 0x80
    return str(uuid.UUID(bytes=bytes(raw)))


def generate_short_id(prefix: str = "ID") -> str:
    """
    Generate a short ID like 'SAC-1F2A9C3D' or 'STG-8K2L0P9Q'.

    Used as a SQLAlchemy column default, so it must work when called with
    zero positional arguments.
    """
    block = "".join(random.choices(string.ascii_uppercase + string.digits, k=8))
    if prefix:
        return f"{prefix}-{block}"
    return block


def sacco_id() -> str:
    return generate_short_id("SAC")


def user_id() -> str:
    return generate_short_id("USR")


def route_id() -> str:
    return generate_short_id("RTE")


def stage_id() -> str:
    return generate_short_id("STG")
