"""
Token sampling logic for the cortex engine.
This module composes the score-vector transforms of logits_processor into the
fixed sampling pipeline: penalties, temperature, mirostat or the filter chain,
and finally a weighted draw.
"""

import logging
from typing import Dict, List, Optional, Sequence, Tuple

import torch

from . import logits_processor as lp
from .errors import DimensionMismatch
from .metrics import inc_counter, timed_histogram
from .sampler_types import GenerationState, SamplingConfig

logger = logging.getLogger(__name__)


def apply_penalties(
    logits: torch.Tensor,
    sampling: SamplingConfig,
    state: GenerationState,
    history: Optional[Sequence[int]] = None,
) -> torch.Tensor:
    """Score-space adjustments: logit bias, DRY, repetition, frequency and presence."""
    logits = lp.apply_logit_bias(logits, sampling.logit_bias)
    # DRY searches the same trailing window as the repetition penalty; 0 disables it
    if sampling.dry_multiplier > 0 and sampling.repeat_last_n > 0:
        if history is None:
            history = state.penalty_window
        logits = lp.dry_penalty(
            logits,
            list(history)[-sampling.repeat_last_n:],
            sampling.dry_multiplier,
            sampling.dry_base,
            sampling.dry_allowed_length,
            sampling.dry_sequence_breakers,
        )
    logits = lp.apply_repetition_penalty(logits, state.penalty_window, sampling.repeat_penalty)
    return lp.apply_frequency_presence_penalty(
        logits, state.token_counts(), sampling.frequency_penalty, sampling.presence_penalty
    )


def _top_token_info(probs: torch.Tensor) -> List[Dict[str, float]]:
    return [
        {'token_id': token_id, 'probability': round(prob, 4)}
        for token_id, prob in lp.top_tokens(probs)
    ]


def _one_hot(token_id: int, size: int) -> torch.Tensor:
    probs = torch.zeros(size, dtype=torch.float32)
    probs[token_id] = 1.0
    return probs


@timed_histogram("sampler_select_next_token_seconds")
def select_next_token(
    logits: torch.Tensor,
    sampling: SamplingConfig,
    state: GenerationState,
    vocab_size: Optional[int] = None,
    history: Optional[Sequence[int]] = None,
) -> Tuple[int, torch.Tensor, List[Dict[str, float]]]:  # Return token_id, probs, top_token_info
    """
    Applies the sampling pipeline to one score vector and selects the next token.

    Args:
        logits: Scores for the next token, shape [vocab_size] (a leading batch dimension of 1 is accepted).
        sampling: The active SamplingConfig.
        state: Per-request state. Its penalty window is read and its mirostat `mu` is updated.
        vocab_size: Expected vocabulary size; a mismatch raises DimensionMismatch.
        history: Token history searched by the DRY penalty, limited to its last
            `sampling.repeat_last_n` tokens (defaults to the penalty window).

    Returns:
        Tuple containing:
        - The selected next token ID (int).
        - The final probability distribution tensor after sampling filters.
        - List of the top ~20 tokens and their probabilities for UI display.
    """
    if logits.dim() == 2 and logits.shape[0] == 1:
        logits = logits[0]
    if vocab_size is not None and logits.shape[-1] != vocab_size:
        raise DimensionMismatch(vocab_size, logits.shape[-1])
    logits = logits.detach().to(device="cpu", dtype=torch.float32)
    n_vocab = logits.shape[-1]

    penalized = apply_penalties(logits, sampling, state, history)

    if sampling.greedy:
        token_id = lp.argmax(penalized)
        return token_id, _one_hot(token_id, n_vocab), _top_token_info(lp.softmax(penalized))

    scaled = lp.scale_by_temperature(penalized, sampling.temperature)
    # --- Capture Top Tokens for UI (Before Filtering) ---
    top_token_info_for_ui = _top_token_info(lp.softmax(scaled))
    rng = state.generator()

    if sampling.mirostat_mode:
        probs = lp.softmax(scaled)
        if probs.sum() <= 0:
            token_id = lp.argmax(scaled)
            return token_id, _one_hot(token_id, n_vocab), top_token_info_for_ui
        mirostat = lp.mirostat_v1_sample if sampling.mirostat_mode == 1 else lp.mirostat_sample
        token_id, state.mu = mirostat(probs, sampling.mirostat_tau, sampling.mirostat_eta, state.mu, rng)
        return token_id, probs, top_token_info_for_ui

    probs = lp.softmax(lp.top_k_filter(scaled, sampling.top_k))
    probs = lp.renormalize(lp.typical_p_filter(probs, sampling.typical_p))
    probs = lp.renormalize(lp.top_p_filter(probs, sampling.top_p))
    probs = lp.renormalize(lp.min_p_filter(probs, sampling.min_p))
    probs = lp.renormalize(lp.xtc_filter(probs, sampling.xtc_threshold, sampling.xtc_probability, rng))

    if probs.sum() <= 0:
        # Every token was masked; fall back to the best adjusted score
        inc_counter("sampler_all_masked_fallback_total")
        logger.warning("All tokens masked by the sampling pipeline, falling back to argmax")
        token_id = lp.argmax(scaled)
        return token_id, _one_hot(token_id, n_vocab), top_token_info_for_ui

    selected_token_id = lp.sample_weighted(probs, rng)

    # Return ID, final probabilities, and top token info for UI
    return selected_token_id, probs, top_token_info_for_ui
