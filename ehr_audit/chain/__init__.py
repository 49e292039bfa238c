"""Hash chain construction, persistence and verification.

Modules:
- canonical: Canonical entry encoding and hash computation
- store: Append-only per-(channel, date) JSON Lines files
- state: Sidecar checkpoints (optionally Fernet-encrypted)
- hasher: Per-chain locking and running hash maintenance
- verifier: Offline integrity verification
"""

from .canonical import (
    GENESIS_HASH,
    canonicalize,
    compute_chain_hash,
    decode_line,
    encode_line,
    entry_hash,
)
from .hasher import ChainHasher
from .state import ChainStateStore, Checkpoint
from .store import LogStore, TailState, iter_log_files, log_file_name
from .verifier import IntegrityVerifier

__all__ = [
    "GENESIS_HASH",
    "ChainHasher",
    "ChainStateStore",
    "Checkpoint",
    "IntegrityVerifier",
    "LogStore",
    "TailState",
    "canonicalize",
    "compute_chain_hash",
    "decode_line",
    "encode_line",
    "entry_hash",
    "iter_log_files",
    "log_file_name",
]
