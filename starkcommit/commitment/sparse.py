"""Sparse Merkle trees for batch opening of a dense commitment.

A verifier that receives paths for many leaves of the same tree does not need
every path in full: paths share ancestors, and any node whose two children
are known can be recomputed. ``SparseMerkleTree`` keeps only the nodes that
were supplied, one ``SparseMerkleLayer`` (index -> digest map) per level, and
recomputes the root upward.

Serialization order
-------------------
The flat digest list carries no layer or index tags. Both sides derive the
positions from the queried block indices alone (``serialization_positions``):

1. layer 0: both blocks of every queried pair, ascending
2. layer l = 1 .. height-1: for every node on the root-ward frontier, in
   ascending order, its sibling unless the sibling is itself on the frontier

Security Properties:
- A node never changes value once stored: an equal digest is a no-op and a
  different one raises ``ConsistencyViolation``
- Missing data raises ``IncompleteProofError``, never a silent default
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from starkcommit.commitment.cipher import FieldCipher
from starkcommit.commitment.compression import compress_pair
from starkcommit.commitment.dense import (
    MIN_SRC_LOG_LEN,
    get_path_to_block,
    read_block,
    tree_height,
)
from starkcommit.commitment.digest import Digest
from starkcommit.commitment.errors import (
    ConsistencyViolation,
    IncompleteProofError,
    PreconditionViolation,
)
from starkcommit.commitment.verification import VerificationErrorCode, VerificationReport

logger = logging.getLogger(__name__)


# =============================================================================
# Layer
# =============================================================================

class SparseMerkleLayer:
    """Nodes known at one tree level, keyed by position within the level."""

    def __init__(self, level: int = 0) -> None:
        self.level = level
        self._data: Dict[int, Digest] = {}

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, idx: object) -> bool:
        return idx in self._data

    def __repr__(self) -> str:
        return f"SparseMerkleLayer(level={self.level}, size={len(self._data)})"

    def copy(self) -> "SparseMerkleLayer":
        clone = SparseMerkleLayer(self.level)
        clone._data = dict(self._data)
        return clone

    def has_element(self, idx: int) -> bool:
        return idx in self._data

    def add_entry(self, idx: int, digest: Digest) -> None:
        """Store ``digest`` at ``idx``.

        Raises:
            ConsistencyViolation: if ``idx`` already holds a different digest
        """
        self.check_entry(idx, digest)
        self._data.setdefault(idx, digest)

    def check_entry(self, idx: int, digest: Digest) -> None:
        """Raise if storing ``digest`` at ``idx`` would conflict; never stores."""
        existing = self._data.get(idx)
        if existing is not None and existing != digest:
            raise ConsistencyViolation(
                "conflicting digest for tree node",
                layer=self.level,
                index=idx,
                internal_details=f"stored {existing}, received {digest}",
            )

    def delete_entry(self, idx: int) -> None:
        self._data.pop(idx, None)

    def read_data(self, idx: int) -> Digest:
        try:
            return self._data[idx]
        except KeyError:
            raise IncompleteProofError(
                "tree node missing from proof", layer=self.level, index=idx
            ) from None

    def hash_pair(self, idx: int, cipher: Optional[FieldCipher] = None) -> Digest:
        """Parent digest of ``idx`` and its sibling ``idx ^ 1``."""
        left = idx & ~1
        return compress_pair(self.read_data(left), self.read_data(left | 1), cipher)

    def calculate_next_layer(
        self,
        received: "SparseMerkleLayer",
        cipher: Optional[FieldCipher] = None,
    ) -> "SparseMerkleLayer":
        """Merge the parents computable from this layer into ``received``.

        Args:
            received: Nodes supplied directly for the next level

        Returns:
            New layer; neither input is modified

        Raises:
            IncompleteProofError: a node has no sibling and no supplied parent
            ConsistencyViolation: a computed parent disagrees with a supplied one
        """
        next_layer = received.copy()
        next_layer.level = self.level + 1
        for parent in sorted({idx >> 1 for idx in self._data}):
            left, right = parent << 1, (parent << 1) | 1
            if left in self._data and right in self._data:
                next_layer.add_entry(parent, self.hash_pair(left, cipher))
            elif parent not in next_layer:
                missing = right if left in self._data else left
                raise IncompleteProofError(
                    "sibling node missing from proof", layer=self.level, index=missing
                )
        return next_layer

    def to_vector(self) -> List[Digest]:
        return [self._data[idx] for idx in sorted(self._data)]

    def get_indices(self) -> Set[int]:
        return set(self._data)


# =============================================================================
# Serialization order
# =============================================================================

def _check_queries(queried_indices: Iterable[int], height: int) -> List[int]:
    queries = sorted(set(queried_indices))
    for idx in queries:
        if not 0 <= idx < (1 << height):
            raise PreconditionViolation(
                "queried index out of range", f"index {idx} not in [0, {1 << height})"
            )
    return queries


def serialization_positions(
    queried_indices: Iterable[int], height: int
) -> List[Tuple[int, int]]:
    """``(layer, index)`` of every serialized digest, in wire order."""
    if height < 1:
        raise PreconditionViolation("tree height must be positive", f"height={height}")
    queries = _check_queries(queried_indices, height)

    frontier = sorted({idx >> 1 for idx in queries})
    positions = [(0, idx) for pair in frontier for idx in (pair << 1, (pair << 1) | 1)]
    for level in range(1, height):
        members = set(frontier)
        positions.extend((level, node ^ 1) for node in frontier if node ^ 1 not in members)
        frontier = sorted({node >> 1 for node in frontier})
    return positions


# =============================================================================
# Tree
# =============================================================================

class SparseMerkleTree:
    """Partial tree over a ``2^src_log_len``-byte commitment.

    Layer 0 holds leaf blocks, layer ``height`` the root. Single writer: the
    tree does no locking.
    """

    def __init__(self, src_log_len: int, cipher: Optional[FieldCipher] = None) -> None:
        if src_log_len < MIN_SRC_LOG_LEN:
            raise PreconditionViolation(
                "tree must hold at least one dual block",
                f"src_log_len={src_log_len} < {MIN_SRC_LOG_LEN}",
            )
        self.src_log_len = src_log_len
        self.height = tree_height(src_log_len)
        self._cipher = cipher
        self._layers = self._empty_layers()

    @classmethod
    def from_serialized(
        cls,
        src_log_len: int,
        queried_indices: Iterable[int],
        serialized: Sequence[Digest],
        cipher: Optional[FieldCipher] = None,
    ) -> "SparseMerkleTree":
        tree = cls(src_log_len, cipher)
        tree.deserialize(queried_indices, serialized)
        return tree

    def _empty_layers(self) -> List[SparseMerkleLayer]:
        return [SparseMerkleLayer(level) for level in range(self.height + 1)]

    def layer(self, level: int) -> SparseMerkleLayer:
        return self._layers[level]

    def add_path(
        self,
        leaf_pair: Sequence[Digest],
        path: Sequence[Digest],
        pair_index: int,
    ) -> None:
        """Insert an authentication path.

        Args:
            leaf_pair: The two leaf blocks of pair ``pair_index``
            path: Path of either block of the pair, as returned by
                ``get_path_to_block``
            pair_index: Pair position at layer 0 (block index >> 1)

        Raises:
            PreconditionViolation: wrong pair size, path length or index
            ConsistencyViolation: the path conflicts with stored nodes; the
                tree is left unchanged
        """
        if len(leaf_pair) != 2:
            raise PreconditionViolation("leaf pair must hold two digests")
        if len(path) != self.height:
            raise PreconditionViolation(
                "path length does not match tree height",
                f"path has {len(path)} entries, height is {self.height}",
            )
        if not 0 <= pair_index < (1 << (self.height - 1)):
            raise PreconditionViolation("pair index out of range", f"pair_index={pair_index}")

        left, right = leaf_pair
        if path[0] != left and path[0] != right:
            raise ConsistencyViolation(
                "path does not belong to the given leaf pair",
                layer=0,
                index=pair_index << 1,
            )
        entries = [(0, pair_index << 1, left), (0, (pair_index << 1) | 1, right)]
        entries.extend(
            (level, (pair_index >> (level - 1)) ^ 1, path[level])
            for level in range(1, self.height)
        )
        for level, idx, digest in entries:
            self._layers[level].check_entry(idx, digest)
        for level, idx, digest in entries:
            self._layers[level].add_entry(idx, digest)

    def calculate_root(self) -> Digest:
        """Recompute the root from the stored nodes without modifying the tree.

        Raises:
            IncompleteProofError: the stored nodes do not determine the root
            ConsistencyViolation: stored and recomputed nodes disagree
        """
        current = self._layers[0]
        if not len(current):
            raise IncompleteProofError("proof holds no leaves", layer=0)
        for level in range(1, self.height + 1):
            current = current.calculate_next_layer(self._layers[level], self._cipher)
        indices = current.get_indices()
        if indices != {0}:
            raise IncompleteProofError(
                "root layer does not reduce to a single node",
                layer=self.height,
                internal_details=f"root layer indices {sorted(indices)}",
            )
        return current.read_data(0)

    def has_data(self, idx: int) -> bool:
        return self._layers[0].has_element(idx)

    def read_data(self, idx: int) -> Digest:
        return self._layers[0].read_data(idx)

    def to_vector(self) -> List[Digest]:
        """Flatten to wire order, dropping every node derivable from below."""
        vector = self._layers[0].to_vector()
        available = self._layers[0].get_indices()
        for level in range(1, self.height):
            layer = self._layers[level]
            derived = {idx >> 1 for idx in available if idx ^ 1 in available}
            stored = layer.get_indices()
            vector.extend(layer.read_data(idx) for idx in sorted(stored - derived))
            available = derived | stored
        return vector

    def deserialize(self, queried_indices: Iterable[int], serialized: Sequence[Digest]) -> None:
        """Replace the tree content with a flat digest list.

        Raises:
            PreconditionViolation: the list does not have the expected shape
        """
        positions = serialization_positions(queried_indices, self.height)
        if len(serialized) != len(positions):
            raise PreconditionViolation(
                "serialized proof has the wrong length",
                f"got {len(serialized)} digests, expected {len(positions)}",
            )
        layers = self._empty_layers()
        for (level, idx), digest in zip(positions, serialized):
            if not isinstance(digest, Digest):
                raise PreconditionViolation("serialized proof entries must be Digest values")
            layers[level].add_entry(idx, digest)
        self._layers = layers

    def get_serialization_mapping(self, queried_indices: Iterable[int]) -> List[Tuple[int, int]]:
        """``(layer, count)`` for layers 0 .. height-1 of a serialization of ``queried_indices``."""
        counts = [0] * self.height
        for level, _ in serialization_positions(queried_indices, self.height):
            counts[level] += 1
        return list(enumerate(counts))


# =============================================================================
# Wire object
# =============================================================================

@dataclass(frozen=True)
class SparseProof:
    """Batch opening: queried blocks plus the flat digest list."""

    src_log_len: int
    queried_indices: Tuple[int, ...]
    digests: Tuple[Digest, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "src_log_len": self.src_log_len,
            "queried_indices": list(self.queried_indices),
            "digests": [d.hex() for d in self.digests],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SparseProof":
        try:
            return cls(
                src_log_len=int(data["src_log_len"]),
                queried_indices=tuple(int(i) for i in data["queried_indices"]),
                digests=tuple(Digest.from_hex(h) for h in data["digests"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise PreconditionViolation("malformed sparse proof", repr(exc)) from exc


def open_blocks(
    src: Any,
    tree: Any,
    src_log_len: int,
    block_indices: Iterable[int],
    cipher: Optional[FieldCipher] = None,
) -> SparseProof:
    """Prover side: merge the paths of ``block_indices`` into one ``SparseProof``."""
    queries = tuple(sorted(set(block_indices)))
    sparse = SparseMerkleTree(src_log_len, cipher)
    for block_index in queries:
        pair = block_index >> 1
        leaves = (
            read_block(src, src_log_len, pair << 1),
            read_block(src, src_log_len, (pair << 1) | 1),
        )
        path = get_path_to_block(tree, src_log_len, block_index, src)
        sparse.add_path(leaves, path, pair)
    return SparseProof(src_log_len, queries, tuple(sparse.to_vector()))


def verify_sparse_proof(
    proof: SparseProof,
    root: Digest,
    src_log_len: int,
    expected_leaves: Optional[Mapping[int, Union[Digest, bytes]]] = None,
    cipher: Optional[FieldCipher] = None,
) -> VerificationReport:
    """Verifier side: check a batch opening against ``root``.

    Args:
        proof: The received opening
        root: Commitment to check against
        src_log_len: Size of the committed buffer, known to the verifier
            independently of the proof
        expected_leaves: Optional block values the caller expects at given
            block indices

    Returns:
        VerificationReport; ``cannot_verify`` is set for incomplete or
        malformed proofs
    """
    if proof.src_log_len != src_log_len:
        return VerificationReport.fail(
            VerificationErrorCode.MALFORMED_PROOF,
            "Proof is for a tree of a different size",
            expected=src_log_len,
            actual=proof.src_log_len,
        )
    try:
        sparse = SparseMerkleTree.from_serialized(
            src_log_len, proof.queried_indices, proof.digests, cipher
        )
        computed = sparse.calculate_root()
    except IncompleteProofError as exc:
        return VerificationReport.fail(
            VerificationErrorCode.PROOF_INCOMPLETE,
            exc.user_message,
            layer=exc.layer,
            index=exc.index,
        )
    except ConsistencyViolation as exc:
        return VerificationReport.fail(
            VerificationErrorCode.PROOF_INCONSISTENT,
            exc.user_message,
            layer=exc.layer,
            index=exc.index,
        )
    except PreconditionViolation as exc:
        return VerificationReport.fail(VerificationErrorCode.MALFORMED_PROOF, exc.user_message)

    if computed != root:
        logger.info(f"Sparse proof root mismatch: expected {root}, got {computed}")
        return VerificationReport.fail(
            VerificationErrorCode.ROOT_MISMATCH,
            "Recomputed root differs from commitment",
            expected=str(root),
            actual=str(computed),
        )

    for idx, value in (expected_leaves or {}).items():
        expected = value if isinstance(value, Digest) else Digest(bytes(value))
        if not sparse.has_data(idx):
            return VerificationReport.fail(
                VerificationErrorCode.PROOF_INCOMPLETE,
                "Expected leaf is not opened by the proof",
                index=idx,
            )
        if sparse.read_data(idx) != expected:
            return VerificationReport.fail(
                VerificationErrorCode.LEAF_MISMATCH,
                "Opened leaf differs from expected value",
                index=idx,
                expected=str(expected),
                actual=str(sparse.read_data(idx)),
            )

    return VerificationReport.ok(root=str(root), queried=len(proof.queried_indices))
