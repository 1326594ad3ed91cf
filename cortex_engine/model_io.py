"""
Model IO operations for the cortex engine.
This module loads Hugging Face causal language models and adapts them to the
InferenceContext boundary: decoding into a KV cache whose cells follow the
KVMirror grid, exposing logits, tokenization and state snapshots.
"""

import logging
from typing import Any, List, Optional, Sequence, Tuple

import torch
from transformers import AutoModelForCausalLM, AutoTokenizer, DynamicCache

from . import config
from .errors import ConfigurationError, StateError
from .kv_mirror import KVMirror
from .kv_patcher import KVCachePatcher
from .metrics import inc_counter, set_gauge, timed_histogram
from .persistence import pack_state, unpack_state

logger = logging.getLogger(__name__)


@timed_histogram("model_io_load_model_seconds")
def load_model(model_name: str = config.MODEL_NAME, trust_remote_code: bool = config.TRUST_REMOTE_CODE):
    """
    Load model and tokenizer with the specified configuration.

    Args:
        model_name: The name or path of the model to load
        trust_remote_code: Whether to trust remote code in the model

    Returns:
        Tuple containing (model, tokenizer)
    """
    logger.info(f"Loading tokenizer for {model_name}...")
    tokenizer = AutoTokenizer.from_pretrained(model_name, trust_remote_code=trust_remote_code)

    # Access attributes directly on the tokenizer object
    if tokenizer.pad_token is None and tokenizer.eos_token is not None:
        tokenizer.pad_token = tokenizer.eos_token
        logger.debug(f"Set tokenizer pad_token to eos_token ({tokenizer.eos_token})")

    logger.info("Loading model...")
    model = AutoModelForCausalLM.from_pretrained(
        model_name,
        torch_dtype="auto",
        trust_remote_code=trust_remote_code,
    )
    model.to(config.GPU_DEVICE)
    model.eval()
    logger.info(f"Model loaded on {config.GPU_DEVICE}.")
    return model, tokenizer


def _cache_layers(cache: Any) -> List[Tuple[torch.Tensor, torch.Tensor]]:
    """(keys, values) per layer, for both the layered and the list-based DynamicCache."""
    if cache is None:
        return []
    if hasattr(cache, "layers"):
        return [(layer.keys, layer.values) for layer in cache.layers if getattr(layer, "keys", None) is not None]
    return list(zip(cache.key_cache, cache.value_cache))


def _build_cache(layers: Sequence[Tuple[torch.Tensor, torch.Tensor]]) -> DynamicCache:
    cache = DynamicCache()
    for layer_idx, (keys, values) in enumerate(layers):
        cache.update(keys, values, layer_idx)
    return cache


class TensorKVMirror(KVMirror):
    """KVMirror whose structural changes are replayed on the context's cache tensors."""

    def __init__(self, owner: "TransformersContext", capacity: int, supports_partial_removal: bool):
        super().__init__(capacity=capacity, supports_partial_removal=supports_partial_removal)
        self.owner = owner

    def _on_cells_removed(self, indices: List[int]) -> None:
        self.owner._drop_cells(indices)

    def _on_positions_moved(self, indices: List[int], deltas: List[int]) -> None:
        self.owner._rotate_cells(indices, deltas)


class TransformersContext:
    """
    InferenceContext over a transformers causal LM.

    All sequences share one DynamicCache. Cell i of `memory` is entry i along the
    sequence dimension of every cached key/value tensor; each decode attends only
    to the cells of its own sequence and passes the cell positions explicitly.
    """

    def __init__(self, model: Any, tokenizer: Any, context_size: int = config.CONTEXT_SIZE):
        self.model = model
        self.tokenizer = tokenizer
        self.device = next(model.parameters()).device
        model_type = getattr(model.config, "model_type", "")
        self.memory = TensorKVMirror(
            self,
            capacity=context_size,
            supports_partial_removal=model_type not in config.RECURRENT_MODEL_TYPES,
        )
        self.patcher = KVCachePatcher.from_model_config(model.config)
        self.cache: Optional[DynamicCache] = None
        self._logits: Optional[torch.Tensor] = None
        self._eog_ids = self._collect_eog_ids()

    def _collect_eog_ids(self) -> set:
        ids = set()
        candidates = [getattr(self.tokenizer, "eos_token_id", None)]
        generation_config = getattr(self.model, "generation_config", None)
        if generation_config is not None:
            candidates.append(generation_config.eos_token_id)
        for candidate in candidates:
            if isinstance(candidate, int):
                ids.add(candidate)
            elif candidate is not None:
                ids.update(int(c) for c in candidate)
        return ids

    # --- Cache tensor maintenance (driven by TensorKVMirror) ---

    def _set_layers(self, layers: List[Tuple[torch.Tensor, torch.Tensor]]) -> None:
        self.cache = _build_cache(layers) if layers else None

    def _truncate(self, length: int) -> None:
        layers = _cache_layers(self.cache)
        if layers and layers[0][0].shape[-2] != length:
            self._set_layers([(k[:, :, :length], v[:, :, :length]) for k, v in layers] if length else [])

    def _drop_cells(self, indices: List[int]) -> None:
        layers = _cache_layers(self.cache)
        if not layers:
            return
        remaining = len(self.memory.cells)
        if remaining == 0:
            self._set_layers([])
            return
        doomed = set(indices)
        keep = [i for i in range(layers[0][0].shape[-2]) if i not in doomed]
        index = torch.tensor(keep, dtype=torch.long, device=layers[0][0].device)
        self._set_layers([(k.index_select(-2, index), v.index_select(-2, index)) for k, v in layers])

    def _rotate_cells(self, indices: List[int], deltas: List[int]) -> None:
        layers = _cache_layers(self.cache)
        if not layers:
            return
        if not self.patcher.can_shift:
            inc_counter("model_io_unrotated_shift_total")
            return
        rotated = []
        for keys, values in layers:
            index = torch.tensor(indices, dtype=torch.long, device=keys.device)
            delta = torch.tensor(deltas, dtype=torch.long, device=keys.device)
            keys = keys.clone()
            keys[:, :, index] = self.patcher.rotate(keys[:, :, index], delta)
            rotated.append((keys, values))
        self._set_layers(rotated)

    # --- InferenceContext ---

    @timed_histogram("model_io_decode_seconds")
    def decode(self, token_ids: Sequence[int], seq_id: int = 0) -> bool:
        """
        Run the model over `token_ids`, appended to sequence `seq_id`.

        Returns:
            True on success; False if the context is full or the forward pass
            failed, with cells and tensors rolled back
        """
        token_ids = [int(t) for t in token_ids]
        if not token_ids:
            raise ConfigurationError("decode needs at least one token")
        past_len = len(self.memory.cells)
        positions = self.memory.allocate(token_ids, seq_id)
        if positions is None:
            logger.warning(f"Context full: {past_len} + {len(token_ids)} cells exceeds {self.memory.capacity}")
            return False

        mask = [1 if seq_id in cell.seq_ids else 0 for cell in self.memory.cells]
        try:
            with torch.no_grad():
                outputs = self.model(
                    input_ids=torch.tensor([token_ids], dtype=torch.long, device=self.device),
                    attention_mask=torch.tensor([mask], dtype=torch.long, device=self.device),
                    position_ids=torch.tensor([positions], dtype=torch.long, device=self.device),
                    past_key_values=self.cache if self.cache is not None else DynamicCache(),
                    use_cache=True,
                )
        except Exception as e:
            logger.error(f"Forward pass failed: {type(e).__name__} - {e}")
            self.memory.rollback(len(token_ids))
            self._truncate(past_len)
            inc_counter("model_io_decode_failures_total")
            return False

        self.cache = outputs.past_key_values
        self._logits = outputs.logits[0].detach().to(device="cpu", dtype=torch.float32)
        set_gauge("kv_cache_used_cells", len(self.memory.cells))
        return True

    def current_logits(self) -> torch.Tensor:
        return self.logits_at(-1)

    def logits_at(self, index: int) -> torch.Tensor:
        if self._logits is None:
            raise StateError("no logits available before the first decode")
        if not -self._logits.shape[0] <= index < self._logits.shape[0]:
            raise ConfigurationError(f"logits index {index} outside the last batch of {self._logits.shape[0]}")
        return self._logits[index]

    def vocab_size(self) -> int:
        if self._logits is not None:
            return self._logits.shape[-1]
        return self.model.get_output_embeddings().weight.shape[0]

    def tokenize(self, text: str, add_special: bool = True) -> List[int]:
        return self.tokenizer.encode(text, add_special_tokens=add_special)

    def detokenize(self, token_ids: Sequence[int]) -> str:
        return self.tokenizer.decode(list(token_ids), skip_special_tokens=True)

    def is_end_of_generation(self, token_id: int) -> bool:
        return token_id in self._eog_ids

    def save_state(self) -> bytes:
        return pack_state({
            "memory": self.memory.snapshot(),
            "layers": [(k.cpu(), v.cpu()) for k, v in _cache_layers(self.cache)],
            "logits": self._logits,
        })

    def load_state(self, blob: bytes) -> bool:
        try:
            state = unpack_state(blob)
        except ValueError as e:
            logger.error(f"Error loading context state: {e}")
            return False
        layers = [(k.to(self.device), v.to(self.device)) for k, v in state["layers"]]
        if layers and layers[0][0].shape[-2] != len(state["memory"]["cells"]):
            logger.error("Context state is inconsistent: tensor length differs from cell count")
            return False
        self.memory.load_snapshot(state["memory"])
        self._set_layers(layers)
        self._logits = state["logits"]
        return True
