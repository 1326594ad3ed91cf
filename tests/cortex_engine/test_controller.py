"""
Tests for the generation loop, driven by the scripted fake context.
"""

import asyncio

import pytest
import torch

from cortex_engine.controller import CancellationToken, GenerationController
from cortex_engine.errors import ConfigurationError, DecodeError, StateError
from cortex_engine.sampler_types import SamplingConfig, StopReason

from scripted_context import EOS_ID, ScriptedContext

PROMPT = [9]  # " the"


def test_generate_streams_script_until_eos(controller, scripted_context):
    fragments = list(controller.generate(PROMPT))
    assert "".join(fragments) == "Hello world! foo bar"
    assert fragments[0] == "Hello"
    # Prompt decode plus one decode per emitted token
    assert len(scripted_context.decode_calls) == 6
    assert controller.last_state.stop_reason is StopReason.END_OF_GENERATION
    assert controller.last_state.tokens == [1, 2, 3, 4, 5]


def test_max_tokens_zero_performs_no_decode(controller, scripted_context):
    assert list(controller.generate(PROMPT, {"maxTokens": 0})) == []
    assert scripted_context.decode_calls == []
    assert controller.last_state.stop_reason is StopReason.MAX_TOKENS


def test_max_tokens_limits_output(controller):
    fragments = list(controller.generate(PROMPT, SamplingConfig(max_tokens=2)))
    assert fragments == ["Hello", " world"]
    assert controller.last_state.stop_reason is StopReason.MAX_TOKENS


def test_stop_sequence_token_not_emitted():
    context = ScriptedContext(script=[1, 2, 8, 4])
    controller = GenerationController(context)
    fragments = list(controller.generate(PROMPT, SamplingConfig(stop_sequences=("\nUser:",))))
    assert "".join(fragments) == "Hello world"
    assert controller.last_state.stop_reason is StopReason.STOP_SEQUENCE
    # The stop token was never decoded
    assert context.decode_calls[-1] == [2]


def test_multibyte_character_emitted_whole():
    context = ScriptedContext(script=[1, 6, 7, 3])
    controller = GenerationController(context)
    fragments = list(controller.generate(PROMPT))
    assert fragments == ["Hello", "é", "!"]


def test_cancellation_before_next_decode(controller, scripted_context):
    cancel = CancellationToken()
    stream = controller.generate(PROMPT, cancel=cancel)
    assert next(stream) == "Hello"
    cancel.cancel()
    assert list(stream) == []
    assert controller.last_state.stop_reason is StopReason.CANCELLED
    assert len(scripted_context.decode_calls) == 2


def test_decode_failure_raises_and_emits_nothing_partial():
    context = ScriptedContext(script=[1, 2, 3], fail_on_call=3)
    controller = GenerationController(context)
    stream = controller.generate(PROMPT)
    assert next(stream) == "Hello"
    with pytest.raises(DecodeError):
        next(stream)
    assert controller.last_state.stop_reason is StopReason.ERROR
    assert controller.last_state.tokens == [1]
    # The failed token left no cell behind
    assert context.memory.tokens(0) == [9, 1]


def test_validation_is_eager(controller):
    with pytest.raises(ConfigurationError):
        controller.generate([])
    with pytest.raises(ConfigurationError):
        controller.generate(PROMPT, {"temperature": -1.0})
    with pytest.raises(ConfigurationError):
        controller.generate([99])


def test_string_prompt_is_tokenized(controller, scripted_context):
    list(controller.generate("Hello world", SamplingConfig(max_tokens=1)))
    assert scripted_context.decode_calls[0] == [1, 2]


def test_cache_cleared_by_default(controller, scripted_context):
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=1)))
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=1)))
    assert scripted_context.memory.used_cells() == 2


def test_cache_kept_when_requested(controller, scripted_context):
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=1)))
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=1), clear_cache=False))
    assert scripted_context.memory.positions(0) == [0, 1, 2, 3]


def test_cache_operations_rejected_while_generating(controller):
    stream = controller.generate(PROMPT)
    next(stream)
    with pytest.raises(StateError):
        controller.remove_range(0)
    with pytest.raises(StateError):
        controller.generate(PROMPT)
    stream.close()
    assert controller.remove_range(0)
    assert controller.cache_stats().used_tokens == 0


def test_seed_recorded(controller):
    list(controller.generate(PROMPT, SamplingConfig(seed=1234, max_tokens=1)))
    assert controller.last_state.seed == 1234
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=1)))
    assert controller.last_state.seed >= 0


def test_custom_sampler_receives_positions(controller, scripted_context):
    seen = []

    def selector(logits, position):
        seen.append(position)
        assert isinstance(logits, torch.Tensor)
        return [1, 3][position] if position < 2 else -1

    fragments = list(controller.generate_with_custom_sampler(PROMPT, 10, selector))
    assert fragments == ["Hello", "!"]
    assert seen == [0, 1, 2]
    assert controller.last_state.stop_reason is StopReason.SELECTOR


def test_custom_sampler_respects_max_tokens(controller):
    fragments = list(controller.generate_with_custom_sampler(PROMPT, 2, lambda logits, pos: 4))
    assert fragments == [" foo", " foo"]
    assert controller.last_state.stop_reason is StopReason.MAX_TOKENS


def test_custom_sampler_out_of_range(controller):
    stream = controller.generate_with_custom_sampler(PROMPT, 5, lambda logits, pos: 1000)
    with pytest.raises(ConfigurationError):
        next(stream)
    assert list(stream) == []


def test_custom_sampler_does_not_clear_cache(controller, scripted_context):
    scripted_context.memory.allocate([3, 3], seq_id=1)
    list(controller.generate_with_custom_sampler(PROMPT, 1, lambda logits, pos: EOS_ID + 1))
    assert scripted_context.memory.positions(1) == [0, 1]


def test_agenerate_matches_generate():
    async def collect(controller):
        return [fragment async for fragment in controller.agenerate(PROMPT)]

    controller = GenerationController(ScriptedContext(script=[1, 2, 3]))
    assert asyncio.run(collect(controller)) == ["Hello", " world", "!"]


def test_snapshot_and_restore(controller, scripted_context):
    list(controller.generate(PROMPT, SamplingConfig(max_tokens=2)))
    blob = controller.snapshot()
    controller.clear_cache()
    assert controller.cache_stats().used_tokens == 0
    assert controller.restore(blob)
    assert scripted_context.memory.tokens(0) == [9, 1, 2]
    assert not controller.restore(b"")
    assert not controller.restore(b"not a snapshot")


def test_bare_string_stop_sequence_rejected(controller, scripted_context):
    with pytest.raises(ConfigurationError):
        controller.generate(PROMPT, {"stopSequences": "User:"})
    assert scripted_context.decode_calls == []


def test_incomplete_character_flushed_at_end_of_generation():
    context = ScriptedContext(script=[1, 6])
    controller = GenerationController(context)
    fragments = list(controller.generate(PROMPT))
    assert fragments == ["Hello", "\ufffd"]
    assert controller.last_state.stop_reason is StopReason.END_OF_GENERATION


def test_incomplete_character_flushed_at_max_tokens():
    context = ScriptedContext(script=[1, 6, 7])
    controller = GenerationController(context)
    fragments = list(controller.generate(PROMPT, SamplingConfig(max_tokens=2)))
    assert "".join(fragments) == "Hello\ufffd"


def test_agenerate_releases_session_when_consumer_stops():
    async def first_fragment(controller):
        stream = controller.agenerate(PROMPT)
        fragment = await stream.__anext__()
        await stream.aclose()
        return fragment

    controller = GenerationController(ScriptedContext(script=[1, 2, 3]))
    assert asyncio.run(first_fragment(controller)) == "Hello"
    assert controller.remove_range(0)
