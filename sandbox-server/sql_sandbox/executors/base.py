"""
Executor interface for sandboxed query backends.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict

from ..models import Allowed, ExecutionOutcome, ExecutionPolicy


class Executor(ABC):
    @abstractmethod
    async def execute(self, verdict: Allowed, policy: ExecutionPolicy) -> ExecutionOutcome:
        raise NotImplementedError

    @abstractmethod
    async def explain(self, verdict: Allowed, policy: ExecutionPolicy) -> ExecutionOutcome:
        raise NotImplementedError

    @abstractmethod
    async def health(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def startup(self) -> None:
        return None

    async def close(self) -> None:
        return None
