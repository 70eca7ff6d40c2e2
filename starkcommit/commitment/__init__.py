"""Merkle commitments over field-element buffers.

Compression is Davies-Meyer over a block cipher on GF(2^128); dense trees are
laid out in caller-owned buffers; sparse trees merge many openings into one
minimal proof.

Paths include the level-0 sibling block, which lives in the source buffer
rather than the tree buffer, so ``get_path_to_block(tree, src_log_len,
block_index, src)`` takes the committed source as its last argument.
"""

from .cipher import FieldCipher, default_cipher
from .compression import compress, compress_pair
from .dense import (
    construct_sub_tree,
    construct_tree,
    get_block_index,
    get_element_index,
    get_merkle_commitment_inplace,
    get_offset_in_block,
    get_offset_in_dual_block,
    get_path_to_block,
    get_paths_to_blocks,
    log_len_of,
    verify_path_to_block,
)
from .digest import DIGEST_SIZE, Digest, Path
from .errors import (
    CommitmentError,
    ConsistencyViolation,
    IncompleteProofError,
    PreconditionViolation,
)
from .field import BinaryField, GF2m
from .session import CommittedBuffer, commit_buffer
from .sparse import (
    SparseMerkleLayer,
    SparseMerkleTree,
    SparseProof,
    open_blocks,
    verify_sparse_proof,
)
from .verification import VerificationErrorCode, VerificationReport

__all__ = [
    "FieldCipher",
    "default_cipher",
    "compress",
    "compress_pair",
    "construct_sub_tree",
    "construct_tree",
    "get_block_index",
    "get_element_index",
    "get_merkle_commitment_inplace",
    "get_offset_in_block",
    "get_offset_in_dual_block",
    "get_path_to_block",
    "get_paths_to_blocks",
    "log_len_of",
    "verify_path_to_block",
    "DIGEST_SIZE",
    "Digest",
    "Path",
    "CommitmentError",
    "ConsistencyViolation",
    "IncompleteProofError",
    "PreconditionViolation",
    "BinaryField",
    "GF2m",
    "CommittedBuffer",
    "commit_buffer",
    "SparseMerkleLayer",
    "SparseMerkleTree",
    "SparseProof",
    "open_blocks",
    "verify_sparse_proof",
    "VerificationErrorCode",
    "VerificationReport",
]
