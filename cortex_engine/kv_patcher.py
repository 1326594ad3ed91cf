"""
KV Cache Patcher for the cortex engine.

Cached keys of rotary-embedding models carry their position inside the
rotation. When cells are moved to a new position (context shift, sliding
window, position division) the cached keys are re-rotated by the position
delta so that they look as if they had been computed at the new position.
Values carry no positional information and are left untouched.
"""

import logging
from typing import Any, Dict, Optional

import torch

from .metrics import inc_counter, timed_histogram

logger = logging.getLogger(__name__)

SUPPORTED_ROPE_TYPES = ("default", "linear")


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    """Rotates half the hidden dims of the input."""
    x1 = x[..., : x.shape[-1] // 2]
    x2 = x[..., x.shape[-1] // 2:]
    return torch.cat((-x2, x1), dim=-1)


class KVCachePatcher:
    """
    KVCachePatcher re-rotates cached keys after their positions changed.

    Only the half-split rotary layout used by Llama-family models is handled,
    with default or linear frequency scaling. For anything else `can_shift` is
    False and callers update their bookkeeping only.
    """

    def __init__(
        self,
        head_dim: Optional[int],
        rope_theta: Optional[float] = 10000.0,
        partial_rotary_factor: float = 1.0,
        rope_type: str = "default",
        scaling_factor: float = 1.0,
    ):
        """
        Args:
            head_dim: Size of one attention head
            rope_theta: RoPE base; None for models without rotary embeddings
            partial_rotary_factor: Fraction of the head dimension that is rotated
            rope_type: Frequency scaling scheme ("default" or "linear" are supported)
            scaling_factor: Linear scaling factor
        """
        self.head_dim = head_dim
        self.rope_theta = rope_theta
        self.rope_type = rope_type
        self.scaling_factor = scaling_factor
        self.rotary_dim = int(head_dim * partial_rotary_factor) if head_dim else 0
        self.can_shift = (
            rope_theta is not None
            and self.rotary_dim > 0
            and self.rotary_dim % 2 == 0
            and rope_type in SUPPORTED_ROPE_TYPES
        )
        if not self.can_shift:
            logger.warning(
                f"Position shifts will not re-rotate cached keys (rope_type={rope_type}, rope_theta={rope_theta})"
            )

    @classmethod
    def from_model_config(cls, model_config: Any) -> "KVCachePatcher":
        """Extract the rotary parameters from a transformers model config."""
        model_params: Dict[str, Any] = {
            'num_attention_heads': None,
            'head_dim': None,
            'hidden_size': None,
            'rope_theta': None,
            'partial_rotary_factor': 1.0,
        }
        param_mappings = {
            'num_attention_heads': ['num_attention_heads', 'n_head'],
            'head_dim': ['head_dim'],
            'hidden_size': ['hidden_size', 'n_embd', 'hidden_dim'],
            'rope_theta': ['rope_theta', 'rotary_emb_base'],
            'partial_rotary_factor': ['partial_rotary_factor'],
        }
        # Extract parameters using various possible attribute names
        for param, possible_names in param_mappings.items():
            for name in possible_names:
                if getattr(model_config, name, None) is not None:
                    model_params[param] = getattr(model_config, name)
                    break

        # Newer configs keep RoPE settings in one dict
        rope = getattr(model_config, 'rope_parameters', None) or getattr(model_config, 'rope_scaling', None) or {}
        if model_params['rope_theta'] is None and 'rope_theta' in rope:
            model_params['rope_theta'] = rope['rope_theta']
        if 'partial_rotary_factor' in rope:
            model_params['partial_rotary_factor'] = rope['partial_rotary_factor']
        rope_type = rope.get('rope_type', rope.get('type', 'default'))
        scaling_factor = float(rope.get('factor', 1.0)) if rope_type == 'linear' else 1.0

        # If head_dim not found, try to calculate it
        if model_params['head_dim'] is None and model_params['hidden_size'] and model_params['num_attention_heads']:
            model_params['head_dim'] = model_params['hidden_size'] // model_params['num_attention_heads']

        logger.debug(f"Rotary parameters: {model_params}, rope_type={rope_type}")
        return cls(
            head_dim=model_params['head_dim'],
            rope_theta=model_params['rope_theta'],
            partial_rotary_factor=model_params['partial_rotary_factor'],
            rope_type=rope_type,
            scaling_factor=scaling_factor,
        )

    def _inv_freq(self, device: torch.device) -> torch.Tensor:
        exponents = torch.arange(0, self.rotary_dim, 2, dtype=torch.float32, device=device) / self.rotary_dim
        inv_freq = 1.0 / (self.rope_theta ** exponents)
        return inv_freq / self.scaling_factor

    @timed_histogram("kv_patcher_rotate_seconds")
    def rotate(self, keys: torch.Tensor, deltas: torch.Tensor) -> torch.Tensor:
        """
        Re-rotate cached keys by per-cell position deltas.

        Args:
            keys: Cached keys [batch, kv_heads, n_cells, head_dim]
            deltas: Position change of each cell [n_cells]

        Returns:
            Keys rotated as if computed at their new positions
        """
        if not self.can_shift:
            return keys
        inv_freq = self._inv_freq(keys.device)
        angles = deltas.to(device=keys.device, dtype=torch.float32)[:, None] * inv_freq[None, :]
        emb = torch.cat((angles, angles), dim=-1)
        cos = emb.cos().to(keys.dtype)
        sin = emb.sin().to(keys.dtype)

        rot, rest = keys[..., : self.rotary_dim], keys[..., self.rotary_dim:]
        rotated = rot * cos + rotate_half(rot) * sin
        inc_counter("kv_patcher_cells_rotated_total", float(deltas.numel()))
        return torch.cat((rotated, rest), dim=-1)
