"""
Configuration settings for the cortex engine.
This module centralizes the tunable defaults so sampling, cache management and the
transformers adapter read them from one place.
"""

import torch  # For device check

# --- Model Configuration ---
MODEL_NAME = "TinyLlama/TinyLlama-1.1B-Chat-v1.0"
TRUST_REMOTE_CODE = False

# --- Device Configuration ---
GPU_DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
CPU_DEVICE = "cpu"

# --- Context Configuration ---
CONTEXT_SIZE = 2048               # Number of KV cells a context can hold
CACHE_NEARLY_FULL_THRESHOLD = 0.9 # Fraction of max_tokens considered "nearly full"

# Model types whose memory is a recurrent state rather than per-position cells.
# Partial removal is not possible on these.
RECURRENT_MODEL_TYPES = frozenset({"mamba", "mamba2", "falcon_mamba", "rwkv", "recurrent_gemma"})

# --- Sentinels ---
ANY_SEQUENCE = -1     # Sequence id meaning "all sequences"
UNBOUNDED = -1        # Position meaning "from start" (pos0) or "to end" (pos1)
RANDOM_SEED = -1      # Seed meaning "draw a fresh seed per request"

# --- Sampling Defaults ---
DEFAULT_TEMPERATURE = 0.8
DEFAULT_TOP_K = 40
DEFAULT_TOP_P = 0.95
DEFAULT_MIN_P = 0.0
DEFAULT_TYPICAL_P = 1.0
DEFAULT_REPEAT_PENALTY = 1.0
DEFAULT_REPEAT_LAST_N = 64
DEFAULT_FREQUENCY_PENALTY = 0.0
DEFAULT_PRESENCE_PENALTY = 0.0
DEFAULT_MAX_TOKENS = 512

# XTC (exclude top choices)
DEFAULT_XTC_PROBABILITY = 0.0
DEFAULT_XTC_THRESHOLD = 0.1
XTC_MAX_THRESHOLD = 0.5   # Above this at most one token can qualify, so XTC is a no-op

# Mirostat
DEFAULT_MIROSTAT_MODE = 0  # 0 = disabled, 1 = v1, 2 = v2
DEFAULT_MIROSTAT_TAU = 5.0
DEFAULT_MIROSTAT_ETA = 0.1
MIROSTAT_M = 100           # Tokens used by v1 to estimate the Zipf exponent

# DRY (don't repeat yourself)
DEFAULT_DRY_MULTIPLIER = 0.0
DEFAULT_DRY_BASE = 1.75
DEFAULT_DRY_ALLOWED_LENGTH = 2
DRY_MAX_EXPONENT = 40      # Caps base ** exponent so the penalty stays finite

# --- UI / Inspection ---
TOP_TOKENS_FOR_UI = 20     # Number of candidates reported alongside each sampled token
