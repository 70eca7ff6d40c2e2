"""Tests for sparse Merkle trees and batch openings."""

from __future__ import annotations

import functools
import json
import random
from typing import Tuple

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from starkcommit.commitment.dense import (
    construct_tree,
    get_path_to_block,
    node_offset,
    read_block,
    verify_path_to_block,
)
from starkcommit.commitment.digest import Digest
from starkcommit.commitment.errors import (
    ConsistencyViolation,
    IncompleteProofError,
    PreconditionViolation,
)
from starkcommit.commitment.sparse import (
    SparseMerkleLayer,
    SparseMerkleTree,
    SparseProof,
    open_blocks,
    serialization_positions,
    verify_sparse_proof,
)
from starkcommit.commitment.compression import compress_pair
from starkcommit.commitment.verification import VerificationErrorCode


@functools.lru_cache(maxsize=None)
def _built(src_log_len: int, seed: int = 0) -> Tuple[bytes, bytes, Digest]:
    src = random.Random(seed).randbytes(1 << src_log_len)
    tree, root = construct_tree(src, src_log_len)
    return src, bytes(tree), root


def _digest(n: int) -> Digest:
    return Digest(n.to_bytes(16, "little"))


def _add_block_path(sparse: SparseMerkleTree, src: bytes, tree: bytes, src_log_len: int, block: int):
    pair = block >> 1
    leaves = (read_block(src, src_log_len, pair << 1), read_block(src, src_log_len, (pair << 1) | 1))
    sparse.add_path(leaves, get_path_to_block(tree, src_log_len, block, src), pair)


# =============================================================================
# Layer
# =============================================================================

class TestSparseMerkleLayer:
    def test_add_and_read(self):
        layer = SparseMerkleLayer(level=2)
        layer.add_entry(5, _digest(1))
        assert layer.has_element(5)
        assert 5 in layer
        assert layer.read_data(5) == _digest(1)
        assert len(layer) == 1

    def test_equal_insert_is_noop(self):
        layer = SparseMerkleLayer()
        layer.add_entry(3, _digest(7))
        layer.add_entry(3, _digest(7))
        assert layer.to_vector() == [_digest(7)]

    def test_conflicting_insert_raises_and_keeps_value(self):
        layer = SparseMerkleLayer(level=1)
        layer.add_entry(3, _digest(7))
        with pytest.raises(ConsistencyViolation) as excinfo:
            layer.add_entry(3, _digest(8))
        assert excinfo.value.layer == 1
        assert excinfo.value.index == 3
        assert layer.read_data(3) == _digest(7)

    def test_check_entry_never_stores(self):
        layer = SparseMerkleLayer()
        layer.check_entry(0, _digest(1))
        assert not layer.has_element(0)
        layer.add_entry(0, _digest(1))
        layer.check_entry(0, _digest(1))
        with pytest.raises(ConsistencyViolation):
            layer.check_entry(0, _digest(2))

    def test_delete_entry(self):
        layer = SparseMerkleLayer()
        layer.add_entry(0, _digest(1))
        layer.delete_entry(0)
        layer.delete_entry(0)
        assert not layer.has_element(0)

    def test_read_missing_is_incomplete(self):
        with pytest.raises(IncompleteProofError):
            SparseMerkleLayer().read_data(0)

    def test_hash_pair_from_either_side(self):
        layer = SparseMerkleLayer()
        layer.add_entry(4, _digest(1))
        layer.add_entry(5, _digest(2))
        expected = compress_pair(_digest(1), _digest(2))
        assert layer.hash_pair(4) == expected
        assert layer.hash_pair(5) == expected

    def test_hash_pair_needs_both(self):
        layer = SparseMerkleLayer()
        layer.add_entry(4, _digest(1))
        with pytest.raises(IncompleteProofError):
            layer.hash_pair(4)

    def test_next_layer_merges_received(self):
        layer = SparseMerkleLayer(level=0)
        layer.add_entry(0, _digest(1))
        layer.add_entry(1, _digest(2))
        received = SparseMerkleLayer(level=1)
        received.add_entry(1, _digest(3))
        merged = layer.calculate_next_layer(received)
        assert merged.level == 1
        assert merged.get_indices() == {0, 1}
        assert merged.read_data(0) == compress_pair(_digest(1), _digest(2))
        assert received.get_indices() == {1}

    def test_next_layer_conflict(self):
        layer = SparseMerkleLayer(level=0)
        layer.add_entry(0, _digest(1))
        layer.add_entry(1, _digest(2))
        received = SparseMerkleLayer(level=1)
        received.add_entry(0, _digest(9))
        with pytest.raises(ConsistencyViolation):
            layer.calculate_next_layer(received)

    def test_next_layer_missing_sibling(self):
        layer = SparseMerkleLayer(level=0)
        layer.add_entry(2, _digest(1))
        with pytest.raises(IncompleteProofError) as excinfo:
            layer.calculate_next_layer(SparseMerkleLayer(level=1))
        assert excinfo.value.index == 3


# =============================================================================
# Tree
# =============================================================================

class TestSparseMerkleTree:
    def test_eight_leaf_scenario(self):
        src, tree, root = _built(7)
        paths = {b: get_path_to_block(tree, 7, b, src) for b in (0, 3)}
        for block, path in paths.items():
            assert verify_path_to_block(src[block * 16:(block + 1) * 16], root, path, block)

        sparse = SparseMerkleTree(7)
        for block in (0, 3):
            _add_block_path(sparse, src, tree, 7, block)
        assert sparse.calculate_root() == root
        assert sparse.calculate_root() == root

    def test_shared_ancestors_are_not_serialized(self):
        src, tree, _ = _built(7)
        sparse = SparseMerkleTree(7)
        for block in (0, 3):
            _add_block_path(sparse, src, tree, 7, block)
        # four leaves plus the right half of the tree
        assert len(sparse.to_vector()) == 5
        assert serialization_positions([0, 3], 3) == [(0, 0), (0, 1), (0, 2), (0, 3), (2, 1)]

    def test_leaf_access(self):
        src, tree, _ = _built(6)
        sparse = SparseMerkleTree(6)
        _add_block_path(sparse, src, tree, 6, 2)
        assert sparse.has_data(3)
        assert not sparse.has_data(0)
        assert sparse.read_data(2) == read_block(src, 6, 2)

    def test_path_from_odd_block_of_pair(self):
        src, tree, root = _built(6)
        sparse = SparseMerkleTree(6)
        _add_block_path(sparse, src, tree, 6, 1)
        assert sparse.calculate_root() == root

    def test_add_path_preconditions(self):
        src, tree, _ = _built(7)
        sparse = SparseMerkleTree(7)
        path = get_path_to_block(tree, 7, 0, src)
        leaves = (read_block(src, 7, 0), read_block(src, 7, 1))
        with pytest.raises(PreconditionViolation):
            sparse.add_path(leaves, path[:-1], 0)
        with pytest.raises(PreconditionViolation):
            sparse.add_path(leaves, path, 4)
        with pytest.raises(PreconditionViolation):
            sparse.add_path(leaves[:1], path, 0)

    def test_path_for_other_pair_is_inconsistent(self):
        src, tree, _ = _built(7)
        sparse = SparseMerkleTree(7)
        leaves = (read_block(src, 7, 0), read_block(src, 7, 1))
        with pytest.raises(ConsistencyViolation):
            sparse.add_path(leaves, get_path_to_block(tree, 7, 4, src), 0)

    def test_tampered_shared_node_is_inconsistent(self):
        src, tree, _ = _built(7)
        sparse = SparseMerkleTree(7)
        _add_block_path(sparse, src, tree, 7, 3)
        path = get_path_to_block(tree, 7, 0, src)
        path[1] = _digest(12345)
        leaves = (read_block(src, 7, 0), read_block(src, 7, 1))
        sparse.add_path(leaves, path, 0)
        with pytest.raises(ConsistencyViolation):
            sparse.calculate_root()

    def test_rejected_path_leaves_tree_unchanged(self):
        src, tree, root = _built(7)
        sparse = SparseMerkleTree(7)
        _add_block_path(sparse, src, tree, 7, 0)
        before = [sparse.layer(level).get_indices() for level in range(4)]

        path = get_path_to_block(tree, 7, 2, src)
        path[2] = Digest(bytes(16))
        leaves = (read_block(src, 7, 2), read_block(src, 7, 3))
        with pytest.raises(ConsistencyViolation) as excinfo:
            sparse.add_path(leaves, path, 1)
        assert excinfo.value.layer == 2

        assert [sparse.layer(level).get_indices() for level in range(4)] == before
        assert sparse.layer(0).get_indices() == {0, 1}
        assert not sparse.has_data(2)
        assert sparse.calculate_root() == root

    def test_empty_tree_is_incomplete(self):
        with pytest.raises(IncompleteProofError):
            SparseMerkleTree(7).calculate_root()

    def test_missing_upper_sibling_is_incomplete(self):
        src, _, _ = _built(7)
        sparse = SparseMerkleTree(7)
        sparse.layer(0).add_entry(0, read_block(src, 7, 0))
        sparse.layer(0).add_entry(1, read_block(src, 7, 1))
        with pytest.raises(IncompleteProofError) as excinfo:
            sparse.calculate_root()
        assert excinfo.value.layer == 1

    def test_too_small_tree(self):
        with pytest.raises(PreconditionViolation):
            SparseMerkleTree(4)

    @settings(max_examples=25, deadline=None)
    @given(queries=st.sets(st.integers(0, 15), min_size=1, max_size=16))
    def test_sparse_matches_dense_root(self, queries):
        src, tree, root = _built(8)
        sparse = SparseMerkleTree(8)
        for block in queries:
            _add_block_path(sparse, src, tree, 8, block)
        assert sparse.calculate_root() == root

    @settings(max_examples=25, deadline=None)
    @given(queries=st.sets(st.integers(0, 15), min_size=1, max_size=16))
    def test_serialization_round_trip(self, queries):
        src, tree, root = _built(8)
        sparse = SparseMerkleTree(8)
        for block in queries:
            _add_block_path(sparse, src, tree, 8, block)
        vector = sparse.to_vector()

        mapping = sparse.get_serialization_mapping(queries)
        assert [layer for layer, _ in mapping] == [0, 1, 2, 3]
        assert sum(count for _, count in mapping) == len(vector)
        assert len(serialization_positions(queries, 4)) == len(vector)

        rebuilt = SparseMerkleTree.from_serialized(8, queries, vector)
        assert rebuilt.calculate_root() == root
        assert rebuilt.to_vector() == vector
        for block in queries:
            assert rebuilt.read_data(block) == read_block(src, 8, block)

    def test_serialization_never_longer_than_paths(self):
        src, tree, _ = _built(8)
        queries = list(range(16))
        sparse = SparseMerkleTree(8)
        for block in queries:
            _add_block_path(sparse, src, tree, 8, block)
        assert sparse.get_serialization_mapping(queries) == [(0, 16), (1, 0), (2, 0), (3, 0)]

    def test_deserialize_wrong_length(self):
        sparse = SparseMerkleTree(7)
        with pytest.raises(PreconditionViolation):
            sparse.deserialize([0, 3], [_digest(i) for i in range(4)])

    def test_deserialize_out_of_range_query(self):
        with pytest.raises(PreconditionViolation):
            SparseMerkleTree(7).deserialize([8], [])


# =============================================================================
# Batch openings
# =============================================================================

class TestSparseProof:
    def test_open_and_verify(self):
        src, tree, root = _built(8)
        proof = open_blocks(src, tree, 8, [5, 1, 5, 12])
        assert proof.queried_indices == (1, 5, 12)
        report = verify_sparse_proof(
            proof, root, 8, expected_leaves={5: src[80:96], 12: read_block(src, 8, 12)}
        )
        assert report
        assert report.error_code is VerificationErrorCode.OK

    def test_dict_round_trip(self):
        src, tree, root = _built(7)
        proof = open_blocks(src, tree, 7, [2, 6])
        encoded = json.loads(json.dumps(proof.to_dict()))
        assert SparseProof.from_dict(encoded) == proof

    def test_from_dict_rejects_garbage(self):
        with pytest.raises(PreconditionViolation):
            SparseProof.from_dict({"queried_indices": [0]})
        with pytest.raises(PreconditionViolation):
            SparseProof.from_dict({"src_log_len": 7, "queried_indices": [0], "digests": ["zz"]})

    def test_wrong_root_is_mismatch(self):
        src, tree, _ = _built(7)
        other_root = _built(7, seed=5)[2]
        report = verify_sparse_proof(open_blocks(src, tree, 7, [1]), other_root, 7)
        assert not report
        assert report.error_code is VerificationErrorCode.ROOT_MISMATCH
        assert not report.cannot_verify

    def test_tampered_digest_is_mismatch(self):
        src, tree, root = _built(7)
        proof = open_blocks(src, tree, 7, [1])
        digests = list(proof.digests)
        digests[-1] = _digest(99)
        tampered = SparseProof(proof.src_log_len, proof.queried_indices, tuple(digests))
        report = verify_sparse_proof(tampered, root, 7)
        assert report.error_code is VerificationErrorCode.ROOT_MISMATCH

    def test_truncated_proof_is_malformed(self):
        src, tree, root = _built(7)
        proof = open_blocks(src, tree, 7, [1])
        truncated = SparseProof(proof.src_log_len, proof.queried_indices, proof.digests[:-1])
        report = verify_sparse_proof(truncated, root, 7)
        assert report.error_code is VerificationErrorCode.MALFORMED_PROOF
        assert report.cannot_verify

    def test_empty_proof_is_incomplete(self):
        _, _, root = _built(7)
        report = verify_sparse_proof(SparseProof(7, (), ()), root, 7)
        assert report.error_code is VerificationErrorCode.PROOF_INCOMPLETE
        assert report.cannot_verify

    def test_unopened_expected_leaf_is_incomplete(self):
        src, tree, root = _built(7)
        report = verify_sparse_proof(
            open_blocks(src, tree, 7, [0]), root, 7, expected_leaves={6: read_block(src, 7, 6)}
        )
        assert report.error_code is VerificationErrorCode.PROOF_INCOMPLETE

    def test_wrong_expected_leaf(self):
        src, tree, root = _built(7)
        report = verify_sparse_proof(
            open_blocks(src, tree, 7, [0]), root, 7, expected_leaves={1: _digest(3)}
        )
        assert report.error_code is VerificationErrorCode.LEAF_MISMATCH
        assert report.details["index"] == 1

    def test_internal_nodes_posing_as_leaves_are_rejected(self):
        src, tree, root = _built(7)
        # a height-2 subtree whose "leaves" are the two level-2 nodes hashes to root
        level_two = tuple(Digest.from_buffer(tree, node_offset(2, i, 3)) for i in (0, 1))
        forged = SparseProof(5, (0,), level_two)
        assert SparseMerkleTree.from_serialized(5, (0,), forged.digests).calculate_root() == root

        report = verify_sparse_proof(forged, root, 7)
        assert not report
        assert report.error_code is VerificationErrorCode.MALFORMED_PROOF
        assert report.details == {"expected": 7, "actual": 5}

    def test_size_mismatch_rejected_before_parsing(self):
        src, tree, root = _built(8)
        proof = open_blocks(src, tree, 8, [3])
        report = verify_sparse_proof(proof, root, 9)
        assert report.error_code is VerificationErrorCode.MALFORMED_PROOF
        assert report.cannot_verify
