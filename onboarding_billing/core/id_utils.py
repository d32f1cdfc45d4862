import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_correlation_id(prefix: str) -> str:
    return f"{prefix}_{shortuuid.ShortUUID().random(length=16)}"
