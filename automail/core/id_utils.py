import shortuuid


def generate_short_token(length: int = 12) -> str:
    return shortuuid.ShortUUID().random(length=length)
