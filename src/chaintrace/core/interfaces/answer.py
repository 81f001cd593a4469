from abc import ABC, abstractmethod
from typing import Any, Dict


class IAnswerService(ABC):
    """Free-text question answering over a wallet's structured data."""

    @abstractmethod
    async def answer(self, question: str, context: Dict[str, Any]) -> str:
        pass
