"""Abstract state store interface.

A state store persists one :class:`PolicyState` per (repository, branch,
policy). The scheduler guarantees a single writer per key; implementations
must allow concurrent access for different keys.
"""

from abc import ABC, abstractmethod
from types import TracebackType

from reposerver.retention.models import PolicyState

KEY_SEPARATOR = "::"


def state_key(repository: str, branch: str, policy_id: str) -> str:
    """Build the storage key for a policy record."""
    return KEY_SEPARATOR.join((repository, branch, policy_id))


class StateError(Exception):
    """Exception raised when state cannot be read or durably written.

    Attributes:
        message: Explanation of the error.
        key: State key involved, if applicable.
    """

    def __init__(self, message: str, key: str | None = None) -> None:
        """Initialize the StateError.

        Args:
            message: Explanation of the error.
            key: State key involved.
        """
        self.message = message
        self.key = key

        full_message = f"{message} (key={key})" if key else message
        super().__init__(full_message)


class StateStore(ABC):
    """Durable key/value store of policy bookkeeping."""

    @abstractmethod
    async def open(self) -> None:
        """Load persisted state.

        Raises:
            StateError: If the persisted state cannot be read.
        """
        ...

    @abstractmethod
    async def get(self, repository: str, branch: str, policy_id: str) -> PolicyState | None:
        """Read the bookkeeping for a policy.

        Returns:
            The stored PolicyState, or None if the policy never succeeded.

        Raises:
            StateError: If the store is not open.
        """
        ...

    @abstractmethod
    async def put(
        self,
        repository: str,
        branch: str,
        policy_id: str,
        state: PolicyState,
    ) -> None:
        """Durably replace the bookkeeping for a policy.

        Returns only once the record is durable. On failure the previously
        stored record stays visible to :meth:`get`.

        Raises:
            StateError: If the record cannot be written.
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release resources held by the store."""
        ...

    async def __aenter__(self) -> "StateStore":
        await self.open()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()
