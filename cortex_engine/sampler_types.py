"""
Type definitions for the sampling module.

This module contains the data structures needed for sampling configuration and
per-request generation state, separated to avoid circular imports between the
sampler and controller modules.
"""

import math
import re
from collections import Counter, deque
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import torch

from . import config
from .errors import ConfigurationError


class GenerationPhase(Enum):
    """States of one generation request."""
    IDLE = "idle"
    DECODING = "decoding"
    SAMPLING = "sampling"
    STOPPED = "stopped"


class StopReason(Enum):
    END_OF_GENERATION = "end_of_generation"
    MAX_TOKENS = "max_tokens"
    STOP_SEQUENCE = "stop_sequence"
    SELECTOR = "selector"        # Custom selector returned a negative id
    CANCELLED = "cancelled"
    ERROR = "error"


def _check_range(name: str, value: float, low: float, high: float) -> None:
    if not (low <= value <= high):
        raise ConfigurationError(f"{name} must be within [{low}, {high}], got {value}")


@dataclass(frozen=True)
class SamplingConfig:
    """Immutable bundle of generation parameters.

    Values are validated on construction; an invalid value raises ConfigurationError.
    A temperature of 0 selects greedy decoding.
    """
    temperature: float = config.DEFAULT_TEMPERATURE
    top_k: int = config.DEFAULT_TOP_K
    top_p: float = config.DEFAULT_TOP_P
    min_p: float = config.DEFAULT_MIN_P
    typical_p: float = config.DEFAULT_TYPICAL_P
    repeat_penalty: float = config.DEFAULT_REPEAT_PENALTY
    repeat_last_n: int = config.DEFAULT_REPEAT_LAST_N
    frequency_penalty: float = config.DEFAULT_FREQUENCY_PENALTY
    presence_penalty: float = config.DEFAULT_PRESENCE_PENALTY
    mirostat_mode: int = config.DEFAULT_MIROSTAT_MODE
    mirostat_tau: float = config.DEFAULT_MIROSTAT_TAU
    mirostat_eta: float = config.DEFAULT_MIROSTAT_ETA
    dry_multiplier: float = config.DEFAULT_DRY_MULTIPLIER
    dry_base: float = config.DEFAULT_DRY_BASE
    dry_allowed_length: int = config.DEFAULT_DRY_ALLOWED_LENGTH
    dry_sequence_breakers: Tuple[int, ...] = ()
    xtc_probability: float = config.DEFAULT_XTC_PROBABILITY
    xtc_threshold: float = config.DEFAULT_XTC_THRESHOLD
    max_tokens: int = config.DEFAULT_MAX_TOKENS
    stop_sequences: Tuple[str, ...] = ()
    seed: int = config.RANDOM_SEED
    logit_bias: Dict[int, float] = field(default_factory=dict)  # {token_id: logit_delta}

    def __post_init__(self):
        if isinstance(self.stop_sequences, str):
            raise ConfigurationError(f"stop_sequences must be a sequence of strings, got {self.stop_sequences!r}")
        # Normalize containers so the bundle stays immutable in practice
        object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))
        object.__setattr__(self, "dry_sequence_breakers", tuple(int(t) for t in self.dry_sequence_breakers))
        object.__setattr__(self, "logit_bias", {int(k): float(v) for k, v in dict(self.logit_bias).items()})
        self.validate()

    def __hash__(self) -> int:
        # logit_bias is a dict, so hash its sorted items
        values = tuple(getattr(self, f.name) for f in fields(self) if f.name != "logit_bias")
        return hash((values, tuple(sorted(self.logit_bias.items()))))

    def validate(self) -> None:
        if not math.isfinite(self.temperature) or self.temperature < 0:
            raise ConfigurationError(f"temperature must be >= 0, got {self.temperature}")
        _check_range("top_p", self.top_p, 0.0, 1.0)
        _check_range("min_p", self.min_p, 0.0, 1.0)
        _check_range("typical_p", self.typical_p, 0.0, 1.0)
        _check_range("xtc_probability", self.xtc_probability, 0.0, 1.0)
        _check_range("xtc_threshold", self.xtc_threshold, 0.0, 1.0)
        if self.repeat_penalty <= 0:
            raise ConfigurationError(f"repeat_penalty must be > 0, got {self.repeat_penalty}")
        if self.repeat_last_n < 0:
            raise ConfigurationError(f"repeat_last_n must be >= 0, got {self.repeat_last_n}")
        if self.mirostat_mode not in (0, 1, 2):
            raise ConfigurationError(f"mirostat_mode must be 0, 1 or 2, got {self.mirostat_mode}")
        if self.mirostat_mode and (self.mirostat_tau <= 0 or self.mirostat_eta <= 0):
            raise ConfigurationError("mirostat_tau and mirostat_eta must be > 0 when mirostat is enabled")
        if self.dry_multiplier > 0 and self.dry_base <= 1.0:
            raise ConfigurationError(f"dry_base must be > 1 when DRY is enabled, got {self.dry_base}")
        if self.dry_allowed_length < 0:
            raise ConfigurationError(f"dry_allowed_length must be >= 0, got {self.dry_allowed_length}")
        if self.max_tokens < 0:
            raise ConfigurationError(f"max_tokens must be >= 0, got {self.max_tokens}")
        if self.seed < config.RANDOM_SEED:
            raise ConfigurationError(f"seed must be >= {config.RANDOM_SEED}, got {self.seed}")
        for stop in self.stop_sequences:
            if not isinstance(stop, str) or not stop:
                raise ConfigurationError(f"malformed stop sequence: {stop!r}")
        for token_id, delta in self.logit_bias.items():
            if token_id < 0 or math.isnan(delta):
                raise ConfigurationError(f"invalid logit bias entry {token_id}: {delta}")

    @property
    def greedy(self) -> bool:
        return self.temperature == 0

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> "SamplingConfig":
        """
        Build a config from an already-parsed key/value mapping.

        Keys may be snake_case or camelCase (``topK``, ``repeatLastN``...).
        Unknown keys raise ConfigurationError.
        """
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            name = re.sub(r"(?<!^)(?=[A-Z])", "_", key).lower()
            if name in known:
                kwargs[name] = value
            else:
                raise ConfigurationError(f"unknown sampling parameter: {key}")
        try:
            return cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(str(e)) from e


# --- Presets ---
# Conservative settings for near-deterministic output
CONSERVATIVE = SamplingConfig(temperature=0.2, top_k=10, top_p=0.5, repeat_penalty=1.2)
# Creative settings for diverse output
CREATIVE = SamplingConfig(temperature=1.0, top_k=100, top_p=0.98, min_p=0.05, typical_p=0.95, xtc_probability=0.5)
# Mirostat v2 for consistent entropy
MIROSTAT = SamplingConfig(temperature=1.0, mirostat_mode=2, mirostat_tau=5.0, mirostat_eta=0.1)
# Balanced settings (default)
BALANCED = SamplingConfig()


@dataclass
class GenerationState:
    """Mutable state owned by one generation request and discarded at its end."""
    seed: int
    mu: float
    repeat_last_n: int = config.DEFAULT_REPEAT_LAST_N
    tokens: List[int] = field(default_factory=list)
    penalty_window: Deque[int] = field(default_factory=deque)
    text: str = ""
    phase: GenerationPhase = GenerationPhase.IDLE
    stop_reason: Optional[StopReason] = None
    rng: Optional[torch.Generator] = field(default=None, repr=False)

    def __post_init__(self):
        self.penalty_window = deque(self.penalty_window, maxlen=self.repeat_last_n)

    def generator(self) -> torch.Generator:
        """The request's random generator, created on first use from `seed`."""
        if self.rng is None:
            self.rng = torch.Generator(device="cpu")
            if self.seed == config.RANDOM_SEED:
                self.seed = self.rng.seed()
            else:
                self.rng.manual_seed(self.seed)
        return self.rng

    @classmethod
    def for_request(cls, sampling: SamplingConfig, prompt_tokens: Sequence[int], seed: int) -> "GenerationState":
        # The penalty window starts with the tail of the prompt
        window = list(prompt_tokens)[-sampling.repeat_last_n:] if sampling.repeat_last_n else []
        return cls(
            seed=seed,
            mu=2.0 * sampling.mirostat_tau,
            repeat_last_n=sampling.repeat_last_n,
            penalty_window=deque(window),
        )

    @property
    def stopped(self) -> bool:
        return self.phase is GenerationPhase.STOPPED

    def accept(self, token_id: int) -> None:
        """Record an emitted token in the history and the penalty window."""
        self.tokens.append(token_id)
        self.penalty_window.append(token_id)

    def token_counts(self) -> Counter:
        return Counter(self.penalty_window)

    def stop(self, reason: StopReason) -> None:
        self.phase = GenerationPhase.STOPPED
        self.stop_reason = reason
