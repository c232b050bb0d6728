"""Base repository interface for the notetree store."""
from abc import ABC, abstractmethod
from typing import Generic, TypeVar

T = TypeVar("T")


class Repository(ABC, Generic[T]):
    """Abstract base for repositories keyed by a string id."""

    @abstractmethod
    def get(self, id: str) -> T:
        """Get an entity by id, raising if it does not exist."""

    @abstractmethod
    def delete(self, id: str) -> None:
        """Delete an entity by id, raising if it does not exist."""

    @abstractmethod
    def exists(self, id: str) -> bool:
        """Check whether an entity exists."""
