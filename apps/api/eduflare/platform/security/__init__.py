from eduflare.platform.security.context import Actor, Role

__all__ = [
    "Actor",
    "Role",
]
