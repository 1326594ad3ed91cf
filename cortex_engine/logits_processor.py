"""
Score-vector transforms used by the sampler pipeline.

Every function takes a 1-D tensor indexed by token id and returns a new tensor;
the caller's tensor is never modified. Score-space filters mask tokens with
-inf, probability-space filters mask tokens with 0 and leave renormalization to
the caller (see sampler.select_next_token).
"""

import logging
import math
from typing import Iterable, List, Mapping, Sequence, Tuple, Union

import torch

from . import config
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

Rng = Union[int, torch.Generator]


def make_rng(seed: int) -> torch.Generator:
    """Create a CPU generator seeded with `seed`."""
    generator = torch.Generator(device="cpu")
    generator.manual_seed(seed)
    return generator


def _as_generator(rng: Rng) -> torch.Generator:
    return make_rng(rng) if isinstance(rng, int) else rng


def _uniform(rng: torch.Generator) -> float:
    return torch.rand(1, generator=rng, dtype=torch.float64).item()


def scale_by_temperature(logits: torch.Tensor, temperature: float) -> torch.Tensor:
    """Divide every score by `temperature`."""
    if temperature <= 0:
        raise ConfigurationError(f"temperature must be > 0, got {temperature}")
    return logits / temperature


def apply_repetition_penalty(logits: torch.Tensor, recent_tokens: Iterable[int], penalty: float) -> torch.Tensor:
    """Apply repetition penalty to logits to reduce repetition.

    Positive scores are divided by the penalty and negative ones multiplied by it,
    so a repeated token always becomes less likely. Each distinct token is
    penalized once.
    """
    if penalty <= 1.0:
        return logits
    logits = logits.clone()
    vocab_size = logits.shape[-1]
    ids = sorted({t for t in recent_tokens if 0 <= t < vocab_size})
    if not ids:
        return logits
    index = torch.tensor(ids, dtype=torch.long, device=logits.device)
    scores = logits[index]
    logits[index] = torch.where(scores > 0, scores / penalty, scores * penalty)
    return logits


def apply_frequency_presence_penalty(
    logits: torch.Tensor,
    token_counts: Mapping[int, int],
    frequency_penalty: float,
    presence_penalty: float,
) -> torch.Tensor:
    """Subtract `frequency * count + presence * (count > 0)` from each seen token."""
    if frequency_penalty == 0.0 and presence_penalty == 0.0:
        return logits
    logits = logits.clone()
    vocab_size = logits.shape[-1]
    for token_id, count in token_counts.items():
        if 0 <= token_id < vocab_size and count > 0:
            logits[token_id] -= frequency_penalty * count + presence_penalty
    return logits


def apply_logit_bias(logits: torch.Tensor, bias: Mapping[int, float]) -> torch.Tensor:
    """Add a fixed delta to selected token scores."""
    if not bias:
        return logits
    logits = logits.clone()
    vocab_size = logits.shape[-1]
    for token_id, delta in bias.items():
        # Ensure token ID is within vocab bounds before biasing
        if 0 <= token_id < vocab_size:
            logits[token_id] += delta
        else:
            logger.warning(f"Token ID {token_id} out of bounds for biasing (vocab size {vocab_size}).")
    return logits


def softmax(logits: torch.Tensor) -> torch.Tensor:
    """Numerically stable softmax; masked (-inf) entries get probability 0.

    A vector with no finite entry returns all zeros rather than NaN.
    """
    logits = logits.to(torch.float32)
    max_score = logits.max()
    if not torch.isfinite(max_score):
        return torch.zeros_like(logits)
    exp = torch.exp(logits - max_score)
    return exp / exp.sum()


def renormalize(probs: torch.Tensor) -> torch.Tensor:
    """Rescale surviving probability mass to sum to 1 (all-zero input is returned as is)."""
    total = probs.sum()
    if total <= 0:
        return probs
    return probs / total


def _descending_order(values: torch.Tensor) -> torch.Tensor:
    # Stable sort keeps equal scores in ascending token-id order
    return torch.sort(values, descending=True, stable=True).indices


def top_k_filter(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    """Filter logits using top-k sampling; ties are broken by ascending token id."""
    if top_k <= 0 or top_k >= logits.shape[-1]:
        return logits
    order = _descending_order(logits)
    filtered = torch.full_like(logits, float('-inf'))
    keep = order[:top_k]
    filtered[keep] = logits[keep]
    return filtered


def top_p_filter(probs: torch.Tensor, top_p: float) -> torch.Tensor:
    """Filter probabilities using nucleus (top-p) sampling.

    Tokens are kept in descending order up to and including the one whose
    cumulative probability first exceeds `top_p`.
    """
    if top_p >= 1.0:
        return probs
    order = _descending_order(probs)
    cumulative = torch.cumsum(probs[order], dim=-1)
    exceeded = torch.nonzero(cumulative > top_p)
    cutoff = exceeded[0].item() + 1 if exceeded.numel() else probs.shape[-1]
    filtered = torch.zeros_like(probs)
    keep = order[:max(cutoff, 1)]
    filtered[keep] = probs[keep]
    return filtered


def min_p_filter(probs: torch.Tensor, min_p: float) -> torch.Tensor:
    """Zero every token whose probability is below `min_p * max_probability`."""
    if min_p <= 0.0:
        return probs
    threshold = min_p * probs.max()
    return torch.where(probs >= threshold, probs, torch.zeros_like(probs))


def typical_p_filter(probs: torch.Tensor, typical_p: float) -> torch.Tensor:
    """Locally typical filtering.

    Tokens are ranked by how far their surprisal is from the distribution's
    entropy (closest first) and the smallest prefix whose cumulative probability
    exceeds `typical_p` is kept.
    """
    if typical_p >= 1.0:
        return probs
    alive = probs > 0
    log_probs = torch.where(alive, torch.log(probs.clamp_min(1e-38)), torch.zeros_like(probs))
    entropy = -(probs * log_probs).sum()
    deviation = torch.where(alive, (-log_probs - entropy).abs(), torch.full_like(probs, float('inf')))
    order = torch.sort(deviation, stable=True).indices
    cumulative = torch.cumsum(probs[order], dim=-1)
    exceeded = torch.nonzero(cumulative > typical_p)
    cutoff = exceeded[0].item() + 1 if exceeded.numel() else int(alive.sum().item())
    filtered = torch.zeros_like(probs)
    keep = order[:max(cutoff, 1)]
    filtered[keep] = probs[keep]
    return filtered


def xtc_filter(probs: torch.Tensor, threshold: float, trigger_probability: float, rng: Rng) -> torch.Tensor:
    """Exclude Top Choices.

    With probability `trigger_probability`, every token at or above `threshold`
    is removed except the least likely of them, which becomes the new top
    choice. Nothing happens when fewer than two tokens reach the threshold.
    """
    if trigger_probability <= 0.0 or threshold > config.XTC_MAX_THRESHOLD:
        return probs
    if _uniform(_as_generator(rng)) > trigger_probability:
        return probs
    order = _descending_order(probs)
    above = int((probs[order] >= threshold).sum().item())
    if above < 2:
        return probs
    filtered = probs.clone()
    filtered[order[:above - 1]] = 0.0
    return filtered


def sample_weighted(probs: torch.Tensor, rng: Rng) -> int:
    """Draw a token by inverse-CDF sampling; deterministic for a fixed seed."""
    generator = _as_generator(rng)
    probs = probs.to(torch.float64)
    cdf = torch.cumsum(probs, dim=-1)
    total = cdf[-1].item()
    if total <= 0:
        raise ConfigurationError("cannot sample from an all-zero distribution")
    target = torch.tensor([_uniform(generator) * total], dtype=torch.float64)
    index = int(torch.searchsorted(cdf, target, right=True).item())
    if index >= probs.shape[-1]:
        # Rounding pushed us past the end: take the last token with mass
        index = int(torch.nonzero(probs > 0)[-1].item())
    return index


def argmax(logits: torch.Tensor) -> int:
    """Highest-scoring token; the lowest id wins ties."""
    return int(torch.argmax(logits).item())


def mirostat_sample(
    probs: torch.Tensor,
    tau: float,
    eta: float,
    mu: float,
    rng: Rng,
) -> Tuple[int, float]:
    """Mirostat v2 selection.

    Keeps the tokens whose surprisal (-log2 p) is at most `mu`, samples among
    them and moves `mu` toward the target surprisal `tau`.

    Returns:
        Tuple of (token_id, new_mu)
    """
    order = _descending_order(probs)
    sorted_probs = probs[order]
    surprisal = -torch.log2(sorted_probs.clamp_min(1e-38))
    keep = max(int(((surprisal <= mu) & (sorted_probs > 0)).sum().item()), 1)
    truncated = torch.zeros_like(probs)
    truncated[order[:keep]] = probs[order[:keep]]
    truncated = renormalize(truncated)
    token_id = sample_weighted(truncated, rng)
    observed = -math.log2(truncated[token_id].item())
    return token_id, mu - eta * (observed - tau)


def mirostat_v1_sample(
    probs: torch.Tensor,
    tau: float,
    eta: float,
    mu: float,
    rng: Rng,
    m: int = config.MIROSTAT_M,
) -> Tuple[int, float]:
    """Mirostat v1 selection.

    Estimates the Zipf exponent `s_hat` from the `m` most likely tokens, derives
    the k that yields surprisal `mu`, samples from the top-k and updates `mu`.
    """
    order = _descending_order(probs)
    sorted_probs = probs[order].to(torch.float64)
    n_vocab = probs.shape[-1]
    sum_ti_bi = 0.0
    sum_ti_sq = 0.0
    for i in range(min(m, n_vocab) - 1):
        p_i, p_next = sorted_probs[i].item(), sorted_probs[i + 1].item()
        if p_i <= 0 or p_next <= 0:
            break
        t_i = math.log((i + 2) / (i + 1))
        b_i = math.log(p_i / p_next)
        sum_ti_bi += t_i * b_i
        sum_ti_sq += t_i * t_i
    s_hat = sum_ti_bi / sum_ti_sq if sum_ti_sq > 0 else 1.0
    epsilon_hat = s_hat - 1
    if epsilon_hat > 0 and s_hat > 0:
        try:
            k = ((epsilon_hat * (2 ** mu)) / (1 - n_vocab ** (-epsilon_hat))) ** (1 / s_hat)
        except OverflowError:
            k = float(n_vocab)
    else:
        k = float(n_vocab)
    k = int(min(max(k, 1), n_vocab))
    truncated = torch.zeros_like(probs)
    truncated[order[:k]] = probs[order[:k]]
    truncated = renormalize(truncated)
    token_id = sample_weighted(truncated, rng)
    observed = -math.log2(truncated[token_id].item())
    return token_id, mu - eta * (observed - tau)


def dry_penalty(
    logits: torch.Tensor,
    history: Sequence[int],
    multiplier: float,
    base: float,
    allowed_length: int,
    breakers: Iterable[int] = (),
) -> torch.Tensor:
    """Don't Repeat Yourself penalty.

    For every earlier position in `history`, measures how many tokens ending there
    match the current end of `history`. When that repeat is at least
    `allowed_length` long, the token that followed it would extend the repeat and
    gets `multiplier * base ** (length - allowed_length)` subtracted. The longest
    repeat per candidate decides its penalty; breaker tokens end a match.
    """
    if multiplier <= 0.0 or len(history) < 2:
        return logits
    history = list(history)
    breakers = set(breakers)
    last = len(history) - 1
    vocab_size = logits.shape[-1]
    repeat_lengths = {}
    for end in range(last):
        length = 0
        # Compare backwards from `end` against the tail of the history
        while length <= end and history[end - length] == history[last - length]:
            if history[end - length] in breakers:
                break
            length += 1
        if length >= allowed_length and length > 0:
            candidate = history[end + 1]
            if 0 <= candidate < vocab_size:
                repeat_lengths[candidate] = max(repeat_lengths.get(candidate, 0), length)
    if not repeat_lengths:
        return logits
    logits = logits.clone()
    for token_id, length in repeat_lengths.items():
        exponent = min(length - allowed_length, config.DRY_MAX_EXPONENT)
        logits[token_id] -= multiplier * base ** exponent
    return logits


def top_tokens(probs: torch.Tensor, k: int = config.TOP_TOKENS_FOR_UI) -> List[Tuple[int, float]]:
    """The `k` most likely (token_id, probability) pairs, most likely first."""
    order = _descending_order(probs)[:k]
    return [(int(i), float(probs[i])) for i in order.tolist()]
