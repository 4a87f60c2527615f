import shortuuid


def generate_action_id() -> str:
    return f"act_{shortuuid.ShortUUID().random(length=10)}"
