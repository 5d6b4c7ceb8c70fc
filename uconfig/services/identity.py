"""Actor identity used for audit attribution."""

from typing import Protocol


class ActorProvider(Protocol):
    """Supplies the id of the user performing the current operation."""

    def current_user_id(self) -> int | None: ...


class StaticActorProvider:
    """ActorProvider returning a fixed user id (None for anonymous)."""

    def __init__(self, user_id: int | None = None) -> None:
        self.user_id = user_id

    def current_user_id(self) -> int | None:
        return self.user_id
