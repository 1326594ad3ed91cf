"""
In-memory session snapshots.

The byte layout of a snapshot belongs to the context that produced it; the
helpers here only wrap the context calls and provide the torch.save based
packing used by the transformers adapter.
"""

import io
import logging
from typing import Any, Dict, Optional

import torch

from .inference_context import InferenceContext
from .metrics import inc_counter, timed_histogram

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


def pack_state(state: Dict[str, Any]) -> bytes:
    """Serialize a dict of tensors, lists and scalars with torch.save."""
    buffer = io.BytesIO()
    torch.save({"version": STATE_FORMAT_VERSION, **state}, buffer)
    return buffer.getvalue()


def unpack_state(blob: bytes) -> Dict[str, Any]:
    """Inverse of pack_state; raises ValueError on a foreign or corrupt blob."""
    try:
        state = torch.load(io.BytesIO(blob), map_location="cpu", weights_only=True)
    except Exception as e:
        raise ValueError(f"unreadable session state: {e}") from e
    if not isinstance(state, dict) or state.get("version") != STATE_FORMAT_VERSION:
        raise ValueError("unsupported session state format")
    return state


@timed_histogram("persistence_capture_seconds")
def capture_session(context: InferenceContext) -> Optional[bytes]:
    """Save the context's state; returns None if the context failed to produce one."""
    try:
        blob = context.save_state()
    except Exception as e:
        logger.error(f"Error saving session state: {e}")
        return None
    inc_counter("persistence_capture_total")
    logger.info(f"Captured session state ({len(blob)} bytes, {context.memory.used_cells()} cells)")
    return blob


@timed_histogram("persistence_restore_seconds")
def restore_session(context: InferenceContext, blob: bytes) -> bool:
    """Load a state produced by capture_session back into the context."""
    if not blob:
        logger.warning("Empty session state, nothing restored")
        return False
    restored = context.load_state(blob)
    if restored:
        inc_counter("persistence_restore_total")
        logger.info(f"Restored session state ({context.memory.used_cells()} cells)")
    else:
        logger.error("Context rejected the session state")
    return restored
