"""
Scripted stand-in for an InferenceContext, used by the controller tests.
"""

from typing import List, Optional, Sequence

import torch

from cortex_engine.kv_mirror import KVMirror
from cortex_engine.persistence import pack_state, unpack_state

# Byte pieces of the scripted vocabulary; 6 and 7 together spell "é"
PIECES = [
    b"<eos>",
    b"Hello",
    b" world",
    b"!",
    b" foo",
    b" bar",
    b"\xc3",
    b"\xa9",
    b"\nUser:",
    b" the",
]
EOS_ID = 0


class ScriptedContext:
    """
    Fake InferenceContext that replays a script of preferred tokens.

    After the n-th decode following the prompt, the logits strongly favour
    script[n]; once the script is exhausted they favour the end token.
    """

    def __init__(self, script: Sequence[int] = (), capacity: int = 64, fail_on_call: Optional[int] = None,
                 supports_partial_removal: bool = True):
        self.script = list(script)
        self.memory = KVMirror(capacity=capacity, supports_partial_removal=supports_partial_removal)
        self.fail_on_call = fail_on_call
        self.decode_calls: List[List[int]] = []
        self.last_batch = 0

    def decode(self, token_ids, seq_id=0):
        self.decode_calls.append(list(token_ids))
        if self.fail_on_call is not None and len(self.decode_calls) == self.fail_on_call:
            return False
        if self.memory.allocate(token_ids, seq_id) is None:
            return False
        self.last_batch = len(token_ids)
        return True

    def _preferred(self) -> int:
        step = len(self.decode_calls) - 1
        return self.script[step] if step < len(self.script) else EOS_ID

    def current_logits(self):
        return self.logits_at(-1)

    def logits_at(self, index):
        logits = torch.zeros(len(PIECES))
        logits[self._preferred()] = 20.0
        return logits

    def vocab_size(self):
        return len(PIECES)

    def tokenize(self, text, add_special=True):
        tokens = []
        rest = text.encode("utf-8")
        while rest:
            match = max(
                (i for i, piece in enumerate(PIECES) if i != EOS_ID and rest.startswith(piece)),
                key=lambda i: len(PIECES[i]),
            )
            tokens.append(match)
            rest = rest[len(PIECES[match]):]
        return tokens

    def detokenize(self, token_ids):
        return b"".join(PIECES[t] for t in token_ids if t != EOS_ID).decode("utf-8", errors="replace")

    def is_end_of_generation(self, token_id):
        return token_id == EOS_ID

    def save_state(self):
        return pack_state({"memory": self.memory.snapshot(), "calls": len(self.decode_calls)})

    def load_state(self, blob):
        try:
            state = unpack_state(blob)
        except ValueError:
            return False
        self.memory.load_snapshot(state["memory"])
        return True
