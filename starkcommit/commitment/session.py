"""Commitment session: one committed buffer and the queries made against it.

Wraps the dense engine so callers can commit an evaluation table and open
it without tracking the tree buffer and log length by hand. Construction
parallelism comes from ``TreeConfig``.

Example:
    table = np.arange(64, dtype=np.uint64)
    committed = commit_buffer(table)
    proof = committed.open_elements([3, 17])
    assert verify_sparse_proof(proof, committed.root, committed.src_log_len)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Sequence

from starkcommit.commitment.cipher import FieldCipher
from starkcommit.commitment.dense import (
    construct_tree,
    get_block_index,
    get_path_to_block,
    log_len_of,
    read_block,
    tree_height,
    verify_path_to_block,
)
from starkcommit.commitment.digest import Digest, Path
from starkcommit.commitment.sparse import SparseProof, open_blocks
from starkcommit.config import TreeConfig, get_config

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommittedBuffer:
    """A source buffer together with its constructed tree."""

    src: Any
    tree: Any
    src_log_len: int
    root: Digest
    cipher: Optional[FieldCipher] = None

    @property
    def height(self) -> int:
        return tree_height(self.src_log_len)

    def block(self, block_index: int) -> Digest:
        return read_block(self.src, self.src_log_len, block_index)

    def path(self, block_index: int) -> Path:
        return get_path_to_block(self.tree, self.src_log_len, block_index, self.src)

    def paths(self, block_indices: Sequence[int]) -> List[Path]:
        return [self.path(block_index) for block_index in block_indices]

    def verify(self, block_index: int, path: Sequence[Digest]) -> bool:
        return verify_path_to_block(
            self.block(block_index), self.root, path, block_index, cipher=self.cipher
        )

    def open(self, block_indices: Iterable[int]) -> SparseProof:
        return open_blocks(self.src, self.tree, self.src_log_len, block_indices, self.cipher)

    def open_elements(self, element_indices: Iterable[int]) -> SparseProof:
        """Open the blocks holding the given 64-bit field elements."""
        return self.open({get_block_index(idx) for idx in element_indices})


def commit_buffer(
    src: Any,
    config: Optional[TreeConfig] = None,
    *,
    cipher: Optional[FieldCipher] = None,
) -> CommittedBuffer:
    """Build the tree over ``src`` (length must be a power of two)."""
    config = config or get_config().tree
    src_log_len = log_len_of(src)
    segment_log_len = config.segment_log_len
    if segment_log_len is not None:
        segment_log_len = min(segment_log_len, src_log_len)
    tree, root = construct_tree(
        src,
        src_log_len,
        workers=config.workers,
        segment_log_len=segment_log_len,
        cipher=cipher,
    )
    logger.info(f"Committed {1 << src_log_len} bytes, root={root}")
    return CommittedBuffer(src=src, tree=tree, src_log_len=src_log_len, root=root, cipher=cipher)
