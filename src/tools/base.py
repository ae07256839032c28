# src/tools/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

# (stage, data) progress sink; must be safe to call from the event loop
ProgressCallback = Callable[[str, Dict[str, Any]], None]


@dataclass
class AnalysisOutcome:
    raw: Dict[str, Any]
    exit_code: Optional[int]
    elapsed_seconds: float
    early: bool = False
    partial: bool = False
    warnings: List[str] = field(default_factory=list)
    stderr_tail: str = ""


class SecurityToolAdapter(ABC):
    @abstractmethod
    async def run(
        self,
        target: str,
        tier: str,
        deadline: float,
        on_progress: Optional[ProgressCallback] = None,
    ) -> AnalysisOutcome:
        pass
