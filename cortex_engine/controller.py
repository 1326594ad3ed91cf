"""
Generation controller: the session object that drives decode, sample and
feedback cycles over one inference context and guards its cache.
"""

import asyncio
import logging
import threading
from typing import Any, AsyncIterator, Callable, Iterator, List, Mapping, Optional, Sequence, Union

import torch

from . import config
from .cache_controller import CacheController, KVCacheStats
from .errors import ConfigurationError, DecodeError, StateError
from .inference_context import InferenceContext
from .metrics import inc_counter, timed_histogram
from .persistence import capture_session, restore_session
from .sampler import select_next_token
from .sampler_types import GenerationPhase, GenerationState, SamplingConfig, StopReason

logger = logging.getLogger(__name__)

Prompt = Union[str, Sequence[int]]
Selector = Callable[[torch.Tensor, int], int]

# Marks an incomplete multi-byte character at the end of decoded text
REPLACEMENT_CHAR = "\ufffd"


class CancellationToken:
    """Thread-safe flag checked by the generation loop before every decode step."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class GenerationController:
    """
    Owns one inference context and runs generation requests against it.

    One request may be in flight at a time; cache operations are rejected with
    StateError while it runs.
    """

    def __init__(self, context: InferenceContext):
        self.context = context
        self.cache = CacheController(context.memory)
        self.last_state: Optional[GenerationState] = None
        self._busy = False

    # --- Helpers ---

    def _ensure_idle(self) -> None:
        if self._busy:
            raise StateError("a generation request is in flight on this session")

    def _prompt_tokens(self, prompt: Prompt) -> List[int]:
        tokens = self.context.tokenize(prompt) if isinstance(prompt, str) else [int(t) for t in prompt]
        if not tokens:
            raise ConfigurationError("prompt must contain at least one token")
        vocab_size = self.context.vocab_size()
        for token_id in tokens:
            if not 0 <= token_id < vocab_size:
                raise ConfigurationError(f"prompt token {token_id} outside vocabulary of {vocab_size}")
        return tokens

    @staticmethod
    def _resolve_config(sampling: Union[SamplingConfig, Mapping[str, Any], None]) -> SamplingConfig:
        if sampling is None:
            return SamplingConfig()
        if isinstance(sampling, SamplingConfig):
            return sampling
        return SamplingConfig.from_dict(sampling)

    @staticmethod
    def _fragment(full_text: str, emitted: str) -> str:
        """New text since `emitted`, holding back an incomplete trailing character."""
        if full_text.endswith(REPLACEMENT_CHAR):
            return ""
        if not full_text.startswith(emitted):
            logger.debug("Decoded text no longer extends the emitted text")
        return full_text[len(emitted):]

    @staticmethod
    def _held_back(state: GenerationState, emitted: str) -> str:
        """Decoded text not yet emitted when the stream stops."""
        if not state.text.startswith(emitted) or len(state.text) == len(emitted):
            return ""
        logger.debug(f"Flushing incomplete trailing text {state.text[len(emitted):]!r}")
        return state.text[len(emitted):]

    def _decode_prompt(self, prompt: List[int], seq_id: int, clear_cache: bool, state: GenerationState) -> None:
        if clear_cache:
            self.cache.clear()
        state.phase = GenerationPhase.DECODING
        if not self.context.decode(prompt, seq_id):
            state.stop(StopReason.ERROR)
            raise DecodeError(f"failed to decode prompt of {len(prompt)} tokens")

    def _decode_token(self, token_id: int, seq_id: int, state: GenerationState) -> None:
        state.phase = GenerationPhase.DECODING
        if not self.context.decode([token_id], seq_id):
            state.stop(StopReason.ERROR)
            inc_counter("controller_decode_errors_total")
            raise DecodeError(f"failed to decode token {token_id} at step {len(state.tokens)}")

    def _finish(self, state: GenerationState, reason: StopReason) -> None:
        state.stop(reason)
        inc_counter(f"controller_stop_{reason.value}_total")
        logger.info(f"Generation stopped ({reason.value}) after {len(state.tokens)} tokens, seed {state.seed}")

    # --- Generation ---

    def generate(
        self,
        prompt: Prompt,
        sampling: Union[SamplingConfig, Mapping[str, Any], None] = None,
        *,
        cancel: Optional[CancellationToken] = None,
        seq_id: int = 0,
        clear_cache: bool = True,
    ) -> Iterator[str]:
        """
        Stream generated text for a prompt.

        Arguments are validated immediately; the returned iterator is lazy and
        can be consumed once.

        Args:
            prompt: Prompt token ids (a string is tokenized by the context)
            sampling: SamplingConfig or a mapping accepted by SamplingConfig.from_dict
            cancel: Token checked before each decode step
            seq_id: Sequence the prompt and output are decoded into
            clear_cache: Clear the whole cache before decoding the prompt

        Returns:
            Iterator of text fragments
        """
        sampling = self._resolve_config(sampling)
        if seq_id < 0:
            raise ConfigurationError(f"invalid sequence id {seq_id}")
        tokens = self._prompt_tokens(prompt)
        self._ensure_idle()
        return self._generate(tokens, sampling, cancel, seq_id, clear_cache)

    def _generate(
        self,
        prompt: List[int],
        sampling: SamplingConfig,
        cancel: Optional[CancellationToken],
        seq_id: int,
        clear_cache: bool,
    ) -> Iterator[str]:
        state = GenerationState.for_request(sampling, prompt, sampling.seed)
        state.generator()
        self.last_state = state
        if sampling.max_tokens == 0:
            self._finish(state, StopReason.MAX_TOKENS)
            return

        self._ensure_idle()
        self._busy = True
        try:
            self._decode_prompt(prompt, seq_id, clear_cache, state)
            vocab_size = self.context.vocab_size()
            emitted = ""
            while True:
                if cancel is not None and cancel.cancelled:
                    self._finish(state, StopReason.CANCELLED)
                    break

                state.phase = GenerationPhase.SAMPLING
                # The penalty window holds the trailing prompt and output tokens DRY searches
                token_id, _, _ = select_next_token(
                    self.context.current_logits(), sampling, state, vocab_size=vocab_size,
                )
                if self.context.is_end_of_generation(token_id):
                    self._finish(state, StopReason.END_OF_GENERATION)
                    break

                full_text = self.context.detokenize(state.tokens + [token_id])
                if any(full_text.endswith(stop) for stop in sampling.stop_sequences):
                    self._finish(state, StopReason.STOP_SEQUENCE)
                    break

                self._decode_token(token_id, seq_id, state)
                state.accept(token_id)
                state.text = full_text
                fragment = self._fragment(full_text, emitted)
                if fragment:
                    emitted += fragment
                    yield fragment

                if len(state.tokens) >= sampling.max_tokens:
                    self._finish(state, StopReason.MAX_TOKENS)
                    break
            tail = self._held_back(state, emitted)
            if tail:
                yield tail
        finally:
            self._busy = False

    def generate_with_custom_sampler(
        self,
        prompt: Prompt,
        max_tokens: int,
        selector: Selector,
        *,
        cancel: Optional[CancellationToken] = None,
        seq_id: int = 0,
        clear_cache: bool = False,
    ) -> Iterator[str]:
        """
        Stream text where every token is chosen by `selector(logits, position)`.

        `position` counts generated tokens from 0. A negative return value ends
        the stream; an id outside the vocabulary raises ConfigurationError.
        """
        if max_tokens < 0:
            raise ConfigurationError(f"max_tokens must be >= 0, got {max_tokens}")
        if seq_id < 0:
            raise ConfigurationError(f"invalid sequence id {seq_id}")
        tokens = self._prompt_tokens(prompt)
        self._ensure_idle()
        return self._generate_custom(tokens, max_tokens, selector, cancel, seq_id, clear_cache)

    def _generate_custom(
        self,
        prompt: List[int],
        max_tokens: int,
        selector: Selector,
        cancel: Optional[CancellationToken],
        seq_id: int,
        clear_cache: bool,
    ) -> Iterator[str]:
        state = GenerationState(seed=config.RANDOM_SEED, mu=0.0)
        self.last_state = state
        if max_tokens == 0:
            self._finish(state, StopReason.MAX_TOKENS)
            return

        self._ensure_idle()
        self._busy = True
        try:
            self._decode_prompt(prompt, seq_id, clear_cache, state)
            vocab_size = self.context.vocab_size()
            emitted = ""
            for position in range(max_tokens):
                if cancel is not None and cancel.cancelled:
                    self._finish(state, StopReason.CANCELLED)
                    break
                state.phase = GenerationPhase.SAMPLING
                token_id = int(selector(self.context.current_logits().clone(), position))
                if token_id < 0:
                    self._finish(state, StopReason.SELECTOR)
                    break
                if token_id >= vocab_size:
                    state.stop(StopReason.ERROR)
                    raise ConfigurationError(f"selector returned token {token_id} outside vocabulary of {vocab_size}")

                self._decode_token(token_id, seq_id, state)
                state.accept(token_id)
                state.text = self.context.detokenize(state.tokens)
                fragment = self._fragment(state.text, emitted)
                if fragment:
                    emitted += fragment
                    yield fragment
            else:
                self._finish(state, StopReason.MAX_TOKENS)
            tail = self._held_back(state, emitted)
            if tail:
                yield tail
        finally:
            self._busy = False

    async def agenerate(
        self,
        prompt: Prompt,
        sampling: Union[SamplingConfig, Mapping[str, Any], None] = None,
        **kwargs: Any,
    ) -> AsyncIterator[str]:
        """Async variant of generate; each step runs in a worker thread."""
        stream = self.generate(prompt, sampling, **kwargs)
        sentinel = object()
        try:
            while True:
                fragment = await asyncio.to_thread(next, stream, sentinel)
                if fragment is sentinel:
                    return
                yield fragment
        finally:
            # Releases the session when the consumer stops early
            stream.close()

    # --- Cache operations ---

    def cache_stats(self) -> KVCacheStats:
        return self.cache.stats()

    def clear_cache(self, include_data: bool = True) -> None:
        self._ensure_idle()
        self.cache.clear(include_data)

    def remove_range(self, seq_id: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> bool:
        self._ensure_idle()
        return self.cache.remove_range(seq_id, pos0, pos1)

    def copy_range(self, src: int, dst: int, pos0: int = config.UNBOUNDED, pos1: int = config.UNBOUNDED) -> None:
        self._ensure_idle()
        self.cache.copy_range(src, dst, pos0, pos1)

    def keep_only(self, seq_id: int) -> None:
        self._ensure_idle()
        self.cache.keep_only(seq_id)

    def shift_positions(self, seq_id: int, pos0: int, pos1: int, delta: int) -> None:
        self._ensure_idle()
        self.cache.shift_positions(seq_id, pos0, pos1, delta)

    def divide_positions(self, seq_id: int, pos0: int, pos1: int, divisor: int) -> None:
        self._ensure_idle()
        self.cache.divide_positions(seq_id, pos0, pos1, divisor)

    def apply_sliding_window(self, window_size: int, seq_id: int = 0) -> bool:
        self._ensure_idle()
        return self.cache.apply_sliding_window(window_size, seq_id)

    def context_shift(self, seq_id: int = 0, keep_first: int = 0, discard: Optional[int] = None) -> int:
        self._ensure_idle()
        return self.cache.context_shift(seq_id, keep_first, discard)

    # --- Snapshots ---

    @timed_histogram("controller_snapshot_seconds")
    def snapshot(self) -> bytes:
        self._ensure_idle()
        blob = capture_session(self.context)
        if blob is None:
            raise StateError("the context could not save its state")
        return blob

    def restore(self, blob: bytes) -> bool:
        self._ensure_idle()
        return restore_session(self.context, blob)
