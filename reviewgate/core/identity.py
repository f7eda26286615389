"""
Identity/roles provider - resolves a role name to the reviewers who hold it.

An empty resolved set means "unassigned", never an error.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional

from .config import ReviewConfiguration
from .errors import DependencyUnavailable
from ..util.logging import logger


class IdentityProvider(ABC):
    """Abstract role directory."""

    @abstractmethod
    def resolve_role(self, role: str) -> List[str]:
        """Return the reviewer ids holding `role` (possibly empty)."""
        pass

    def resolve_roles(self, roles: Iterable[str]) -> List[str]:
        """Union of several roles, first-seen order, no duplicates."""
        seen = []
        for role in roles:
            for member in self.resolve_role(role):
                if member not in seen:
                    seen.append(member)
        return seen

    def can_act(self, reviewer_id: str, assigned_to: Optional[str], role: Optional[str]) -> bool:
        """
        Check whether a reviewer may decide on work assigned to a user and/or role.

        Nobody assigned and an empty role means the work is open to any reviewer.
        """
        if assigned_to and reviewer_id == assigned_to:
            return True
        members = self.resolve_role(role) if role else []
        if members:
            return reviewer_id in members
        return not assigned_to


class ConfigRoleDirectory(IdentityProvider):
    """Role directory taken from the `role_directory` section of the review policy."""

    def __init__(self, config_source: Callable[[], ReviewConfiguration]):
        self._config_source = config_source

    def resolve_role(self, role: str) -> List[str]:
        try:
            directory = self._config_source().role_directory
        except Exception as e:
            logger.error(f"Role lookup failed for {role}: {e}")
            raise DependencyUnavailable("identity", "resolve_role", e) from e
        return list(directory.get(role, ()))
