import uuid

def gen_id(prefix: str | None = None) -> str:
    if not prefix:
        return uuid.uuid4().hex
    return f"{prefix}_{uuid.uuid4().hex}"
