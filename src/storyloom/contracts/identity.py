"""Caller identity for privileged code paths.

Authentication happens upstream; this is the already-verified result.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class Actor:
    """An authenticated caller.

    Attributes:
        actor_id: Stable user id
        is_admin: Holds the admin claim
        is_writer: Holds the writer claim (content staff)
    """

    actor_id: str
    is_admin: bool = False
    is_writer: bool = False

    @property
    def is_privileged(self) -> bool:
        return self.is_admin or self.is_writer
