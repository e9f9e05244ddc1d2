from abc import ABC, abstractmethod
from typing import Optional


class LLM(ABC):
    """Transport to the converter agent: one request in, the reply text out.

    Implementations raise on transport failures and non-2xx responses; they
    must not retry on their own, AgentClient owns the retry policy.
    """

    @abstractmethod
    def complete(self, prompt: str, *, system: str, context: Optional[str] = None, **kwargs) -> str:
        ...
