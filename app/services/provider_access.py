"""Visibility rule for provider configurations.

A caller can use a config when it is active and either owns it, or the
config is global (no owner) and its access level lets the caller in:
``public`` and ``authenticated`` admit every signed-in caller,
``restricted`` only the ids listed in ``allowed_users``.
"""

from collections.abc import Iterable


def is_visible_to(
    user_id: str,
    *,
    owner_id: str | None,
    access_level: str,
    allowed_users: Iterable[str] | None,
    is_active: bool,
) -> bool:
    if not is_active:
        return False
    if owner_id is not None:
        return owner_id == user_id
    if access_level in ("public", "authenticated"):
        return True
    if access_level == "restricted":
        return user_id in set(allowed_users or ())
    return False
