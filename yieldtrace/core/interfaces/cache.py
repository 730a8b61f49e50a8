from abc import ABC, abstractmethod
from typing import Any, Optional


class ICache(ABC):
    """
    Injected response cache. The core never touches it; the API layer
    caches serialized results through it.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        pass

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int = 60):
        pass

    @abstractmethod
    def delete(self, key: str):
        pass
