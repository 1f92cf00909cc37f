"""Auth-related enums."""

from enum import Enum


class Role(str, Enum):
    """
    Agent roles.

    - AGENT: Works tickets (reply, notes, tags, updates)
    - ADMIN: Agent plus destructive bulk operations
    """

    AGENT = "agent"
    ADMIN = "admin"