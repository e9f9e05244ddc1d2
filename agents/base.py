import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional


class Agent(ABC):
    """Entry point of one conversion pipeline.

    `context` carries the non-prompt parts of the inbound request
    (`schema`, `sampleRows`, `fileId`) and may hold a `cancel_event`.
    """

    @abstractmethod
    def run(self, user_query: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        ...

    @staticmethod
    def cancel_event(context: Optional[Dict[str, Any]]) -> Optional[threading.Event]:
        event = (context or {}).get("cancel_event")
        return event if isinstance(event, threading.Event) else None
