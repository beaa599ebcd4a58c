from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from memory_engineering.shared.errors import DimensionMismatch


@dataclass
class EmbeddingBatchResult:
    """
    Vectors for an ordered batch of inputs.

    ``vectors`` always has one slot per input. A slot is ``None`` when the
    provider did not return a usable vector for that input; the reason is kept
    in ``flagged`` under the input's index. Callers must skip flagged items
    rather than store a placeholder vector.
    """

    vectors: List[Optional[List[float]]]
    dims: int
    flagged: Dict[int, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.flagged

    def __len__(self) -> int:
        return len(self.vectors)

    def valid_items(self) -> List[tuple[int, List[float]]]:
        return [
            (idx, vector)
            for idx, vector in enumerate(self.vectors)
            if vector is not None and idx not in self.flagged
        ]

    def raise_for_mismatch(self) -> None:
        if self.ok:
            return
        received = len(self.vectors) - len(self.flagged)
        raise DimensionMismatch(
            f"Embedding provider returned {received} usable vectors for "
            f"{len(self.vectors)} inputs; flagged inputs: {sorted(self.flagged)}.",
            expected=len(self.vectors),
            received=received,
            flagged=sorted(self.flagged),
        )
