"""
The boundary between the engine and whatever runs the model forward pass.
"""

from typing import List, Protocol, Sequence, runtime_checkable

import torch

from .kv_mirror import KVMirror


@runtime_checkable
class InferenceContext(Protocol):
    """What the generation loop and the cache controller need from a model runtime."""

    memory: KVMirror

    def decode(self, token_ids: Sequence[int], seq_id: int = 0) -> bool:
        """Run the model over `token_ids` appended to `seq_id`; False on failure with the cache unchanged."""
        ...

    def current_logits(self) -> torch.Tensor:
        """Scores for the token following the last decoded one."""
        ...

    def logits_at(self, index: int) -> torch.Tensor:
        """Scores at `index` of the last decoded batch; negative indices count from the end."""
        ...

    def vocab_size(self) -> int:
        ...

    def tokenize(self, text: str, add_special: bool = True) -> List[int]:
        ...

    def detokenize(self, token_ids: Sequence[int]) -> str:
        ...

    def is_end_of_generation(self, token_id: int) -> bool:
        ...

    def save_state(self) -> bytes:
        ...

    def load_state(self, blob: bytes) -> bool:
        ...
