import time
import uuid

import shortuuid


def generate_id() -> str:
    return str(uuid.uuid4())


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_short_token(length: int = 12) -> str:
    return shortuuid.ShortUUID().random(length=length)


def generate_vendor_id() -> str:
    return f"vendor_{int(time.time() * 1000)}_{generate_short_token(9).lower()}"
