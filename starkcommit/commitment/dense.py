"""Dense Merkle tree engine over raw byte buffers.

Layout
------
The source buffer of ``2^src_log_len`` bytes is level 0: ``2^h`` blocks of
16 bytes, ``h = src_log_len - LOG_BYTES_PER_HASH``. Internal nodes go to a
destination buffer of the same size in heap order::

    heap index of (level, position) = 2^(h - level) + position
    byte offset                     = heap index * 16

The root is heap index 1 (offset 16); offset 0 is unused. The two children of
heap index ``k`` are ``2k`` and ``2k + 1``, so every compression reads one
contiguous 32-byte dual block, either from the source (level 1) or from the
destination.

Segments
--------
A segment of ``2^segment_log_len`` source bytes owns a complete sub-tree whose
internal nodes occupy byte ranges no other segment touches, so segments can
be built by independent workers. Only levels above the segment roots need
nodes from two segments.

Complexity:
- construct_tree: 2^h - 1 compressions
- get_path_to_block / verify_path_to_block: O(h)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List, Optional, Sequence, Tuple

from starkcommit.commitment.cipher import FieldCipher
from starkcommit.commitment.compression import DUAL_BLOCK_SIZE, compress_bytes
from starkcommit.commitment.digest import DIGEST_SIZE, LOG_BYTES_PER_HASH, Digest, Path
from starkcommit.commitment.errors import (
    PreconditionViolation,
    buffer_length_error,
    digest_length_error,
)

logger = logging.getLogger(__name__)

# Committed tables hold 64-bit field elements, two per block.
LOG_BYTES_PER_ELEMENT = 3
_LOG_ELEMENTS_PER_BLOCK = LOG_BYTES_PER_HASH - LOG_BYTES_PER_ELEMENT

# Smallest source: a single dual block.
MIN_SRC_LOG_LEN = LOG_BYTES_PER_HASH + 1


# =============================================================================
# Index arithmetic
# =============================================================================

def get_block_size() -> int:
    return DIGEST_SIZE


def get_dual_block_size() -> int:
    return DUAL_BLOCK_SIZE


def get_block_index(element_index: int) -> int:
    return element_index >> _LOG_ELEMENTS_PER_BLOCK


def get_element_index(block_index: int) -> int:
    """Index of the first element stored in ``block_index``."""
    return block_index << _LOG_ELEMENTS_PER_BLOCK


def get_offset_in_block(index: int) -> int:
    return index & ((1 << _LOG_ELEMENTS_PER_BLOCK) - 1)


def get_offset_in_dual_block(index: int) -> int:
    return index & ((2 << _LOG_ELEMENTS_PER_BLOCK) - 1)


def tree_height(src_log_len: int) -> int:
    return src_log_len - LOG_BYTES_PER_HASH


def node_offset(level: int, position: int, height: int) -> int:
    """Byte offset of an internal node in the destination buffer."""
    if not 1 <= level <= height:
        raise PreconditionViolation(
            "level out of range", f"level {level} not in [1, {height}]"
        )
    width = 1 << (height - level)
    if not 0 <= position < width:
        raise PreconditionViolation(
            "position out of range", f"position {position} not in [0, {width}) at level {level}"
        )
    return (width + position) << LOG_BYTES_PER_HASH


def node_location(offset: int, height: int) -> Tuple[int, int]:
    """Inverse of ``node_offset``: ``(level, position)`` for a byte offset."""
    heap_index = offset >> LOG_BYTES_PER_HASH
    if offset & (DIGEST_SIZE - 1) or not 1 <= heap_index < (1 << height):
        raise PreconditionViolation(
            "offset does not address an internal node",
            f"offset {offset} for height {height}",
        )
    depth = heap_index.bit_length() - 1
    return height - depth, heap_index - (1 << depth)


def _ceil_log2(n: int) -> int:
    return (n - 1).bit_length()


# =============================================================================
# Buffer checks
# =============================================================================

def _byte_view(buffer: Any, name: str) -> memoryview:
    try:
        view = memoryview(buffer)
    except TypeError as exc:
        raise PreconditionViolation(f"{name} must expose the buffer protocol", str(exc)) from exc
    if not view.c_contiguous:
        raise PreconditionViolation(f"{name} must be contiguous")
    if view.ndim != 1 or view.format != "B":
        view = view.cast("B")
    return view


def log_len_of(buffer: Any) -> int:
    """Return ``log2(len(buffer))`` in bytes.

    Raises:
        PreconditionViolation: if the length is not a power of two
    """
    length = len(_byte_view(buffer, "buffer"))
    if length <= 0 or length & (length - 1):
        raise PreconditionViolation(
            "buffer length must be a power of two", f"buffer has {length} bytes"
        )
    return length.bit_length() - 1


def _check_source(src: Any, src_log_len: int) -> memoryview:
    if src_log_len < MIN_SRC_LOG_LEN:
        raise PreconditionViolation(
            "source must hold at least one dual block",
            f"src_log_len={src_log_len} < {MIN_SRC_LOG_LEN}",
        )
    view = _byte_view(src, "source")
    if len(view) != 1 << src_log_len:
        raise buffer_length_error("source", len(view), src_log_len)
    return view


def _check_destination(dst: Any, src_log_len: int) -> memoryview:
    view = _byte_view(dst, "destination")
    if view.readonly:
        raise PreconditionViolation("destination must be writable")
    if len(view) < 1 << src_log_len:
        raise PreconditionViolation(
            "destination is smaller than the source",
            f"destination has {len(view)} bytes, need {1 << src_log_len}",
        )
    return view


def _check_writable_source(data: Any, src_log_len: int) -> memoryview:
    view = _check_source(data, src_log_len)
    if view.readonly:
        raise PreconditionViolation("in-place operations need a writable buffer")
    return view


def _check_segment(src_log_len: int, segment_log_len: int, segment_index: int) -> int:
    if not MIN_SRC_LOG_LEN <= segment_log_len <= src_log_len:
        raise PreconditionViolation(
            "segment size out of range",
            f"segment_log_len={segment_log_len} not in [{MIN_SRC_LOG_LEN}, {src_log_len}]",
        )
    segment_count = 1 << (src_log_len - segment_log_len)
    if not 0 <= segment_index < segment_count:
        raise PreconditionViolation(
            "segment index out of range",
            f"segment_index={segment_index} not in [0, {segment_count})",
        )
    return tree_height(segment_log_len)


def _check_block_index(block_index: int, height: int) -> None:
    if not 0 <= block_index < (1 << height):
        raise PreconditionViolation(
            "block index out of range", f"block {block_index} not in [0, {1 << height})"
        )


# =============================================================================
# Construction
# =============================================================================

def _write_parent(
    src_view: memoryview,
    dst_view: memoryview,
    height: int,
    level: int,
    position: int,
    cipher: Optional[FieldCipher],
) -> None:
    offset = node_offset(level, position, height)
    if level == 1:
        start = position * DUAL_BLOCK_SIZE
        children = src_view[start:start + DUAL_BLOCK_SIZE]
    else:
        start = offset << 1
        children = dst_view[start:start + DUAL_BLOCK_SIZE]
    dst_view[offset:offset + DIGEST_SIZE] = compress_bytes(children, cipher)


def _build_segment(
    src_view: memoryview,
    dst_view: memoryview,
    height: int,
    segment_height: int,
    segment_index: int,
    cipher: Optional[FieldCipher],
) -> Digest:
    for level in range(1, segment_height + 1):
        width = 1 << (segment_height - level)
        first = segment_index * width
        for position in range(first, first + width):
            _write_parent(src_view, dst_view, height, level, position, cipher)
    return Digest.from_buffer(dst_view, node_offset(segment_height, segment_index, height))


def construct_sub_tree(
    src: Any,
    src_log_len: int,
    segment_log_len: int,
    segment_index: int,
    dst: Any,
    *,
    cipher: Optional[FieldCipher] = None,
) -> Digest:
    """Build the sub-tree over one segment of ``src`` into ``dst``.

    Nodes are written at their offsets in the full tree, so workers that own
    different segments may share one destination buffer.

    Args:
        src: Full source buffer, exactly ``2^src_log_len`` bytes
        src_log_len: log2 of the source size in bytes
        segment_log_len: log2 of the segment size in bytes
        segment_index: Which segment to build
        dst: Destination buffer, at least ``2^src_log_len`` bytes

    Returns:
        Digest of the segment root
    """
    src_view = _check_source(src, src_log_len)
    dst_view = _check_destination(dst, src_log_len)
    segment_height = _check_segment(src_log_len, segment_log_len, segment_index)
    return _build_segment(
        src_view, dst_view, tree_height(src_log_len), segment_height, segment_index, cipher
    )


def construct_tree(
    src: Any,
    src_log_len: int,
    dst: Any = None,
    *,
    workers: int = 1,
    segment_log_len: Optional[int] = None,
    cipher: Optional[FieldCipher] = None,
) -> Tuple[Any, Digest]:
    """Build the full tree over ``src``.

    Args:
        src: Source buffer, exactly ``2^src_log_len`` bytes
        src_log_len: log2 of the source size in bytes
        dst: Destination buffer; a new bytearray is allocated when omitted
        workers: Thread count for segment construction
        segment_log_len: Segment size; derived from ``workers`` when omitted
        cipher: Cipher override, mostly for tests

    Returns:
        Tuple of (dst, root)
    """
    src_view = _check_source(src, src_log_len)
    if dst is None:
        dst = bytearray(1 << src_log_len)
    dst_view = _check_destination(dst, src_log_len)
    if workers < 1:
        raise PreconditionViolation("workers must be positive", f"workers={workers}")

    height = tree_height(src_log_len)
    if segment_log_len is None:
        segment_log_len = max(src_log_len - _ceil_log2(workers), MIN_SRC_LOG_LEN)
    segment_height = _check_segment(src_log_len, segment_log_len, 0)
    segment_count = 1 << (src_log_len - segment_log_len)

    if workers > 1 and segment_count > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = [
                executor.submit(
                    _build_segment, src_view, dst_view, height, segment_height, index, cipher
                )
                for index in range(segment_count)
            ]
            for future in futures:
                future.result()
    else:
        for index in range(segment_count):
            _build_segment(src_view, dst_view, height, segment_height, index, cipher)

    for level in range(segment_height + 1, height + 1):
        for position in range(1 << (height - level)):
            _write_parent(src_view, dst_view, height, level, position, cipher)

    root = Digest.from_buffer(dst_view, node_offset(height, 0, height))
    logger.debug(
        f"Constructed tree height={height} segments={segment_count} workers={workers} root={root}"
    )
    return dst, root


def _collapse_level(view: memoryview, count: int, cipher: Optional[FieldCipher]) -> None:
    """Replace ``2 * count`` nodes at the front of ``view`` by their parents."""
    for i in range(count):
        start = i * DUAL_BLOCK_SIZE
        parent = compress_bytes(view[start:start + DUAL_BLOCK_SIZE], cipher)
        view[i * DIGEST_SIZE:(i + 1) * DIGEST_SIZE] = parent


def get_merkle_commitment_inplace(
    data: Any, src_log_len: int, *, cipher: Optional[FieldCipher] = None
) -> Digest:
    """Root of ``data``, using ``data`` itself as scratch space (it is overwritten)."""
    view = _check_writable_source(data, src_log_len)
    count = 1 << tree_height(src_log_len)
    while count > 1:
        count >>= 1
        _collapse_level(view, count, cipher)
    return Digest.from_buffer(view, 0)


# =============================================================================
# Paths
# =============================================================================

def read_block(src: Any, src_log_len: int, block_index: int) -> Digest:
    """Level-0 node ``block_index`` of the source buffer."""
    view = _check_source(src, src_log_len)
    _check_block_index(block_index, tree_height(src_log_len))
    return Digest.from_buffer(view, block_index * DIGEST_SIZE)


def get_path_to_block(tree: Any, src_log_len: int, block_index: int, src: Any) -> Path:
    """Authentication path for one block.

    Args:
        tree: Destination buffer filled by ``construct_tree``
        src_log_len: log2 of the source size in bytes
        block_index: Leaf block to open
        src: The committed source buffer (supplies the level-0 sibling)

    Returns:
        Sibling digests from level 0 up to the level below the root
    """
    src_view = _check_source(src, src_log_len)
    tree_view = _byte_view(tree, "tree")
    if len(tree_view) < 1 << src_log_len:
        raise PreconditionViolation(
            "tree buffer is smaller than the source",
            f"tree has {len(tree_view)} bytes, need {1 << src_log_len}",
        )
    height = tree_height(src_log_len)
    _check_block_index(block_index, height)

    path: Path = [Digest.from_buffer(src_view, (block_index ^ 1) * DIGEST_SIZE)]
    for level in range(1, height):
        sibling = (block_index >> level) ^ 1
        path.append(Digest.from_buffer(tree_view, node_offset(level, sibling, height)))
    return path


def get_paths_to_blocks_inplace(
    data: Any,
    src_log_len: int,
    block_indices: Sequence[int],
    *,
    cipher: Optional[FieldCipher] = None,
) -> List[Path]:
    """Batch path extraction that collapses ``data`` level by level (it is overwritten)."""
    view = _check_writable_source(data, src_log_len)
    height = tree_height(src_log_len)
    for block_index in block_indices:
        _check_block_index(block_index, height)

    paths: List[Path] = [[] for _ in block_indices]
    count = 1 << height
    for level in range(height):
        for path, block_index in zip(paths, block_indices):
            sibling = (block_index >> level) ^ 1
            path.append(Digest.from_buffer(view, sibling * DIGEST_SIZE))
        count >>= 1
        if level + 1 < height:
            _collapse_level(view, count, cipher)
    return paths


def get_paths_to_blocks(
    data: Any,
    src_log_len: int,
    block_indices: Sequence[int],
    *,
    cipher: Optional[FieldCipher] = None,
) -> List[Path]:
    """One path per requested block, in request order. ``data`` is left intact."""
    scratch = bytearray(_check_source(data, src_log_len))
    return get_paths_to_blocks_inplace(scratch, src_log_len, block_indices, cipher=cipher)


# =============================================================================
# Verification
# =============================================================================

def verify_path_to_block(
    block_data: Any,
    root: Digest,
    path: Sequence[Digest],
    block_index: int,
    *,
    cipher: Optional[FieldCipher] = None,
) -> bool:
    """Check that ``block_data`` sits at ``block_index`` under ``root``.

    ``block_data`` is a ``Digest`` or any 16-byte buffer.

    Returns:
        True if the recomputed root equals ``root``; False on any mismatch

    Raises:
        PreconditionViolation: malformed block, path or index
    """
    if isinstance(block_data, Digest):
        block_data = block_data.value
    block = _byte_view(block_data, "block data")
    if len(block) != DIGEST_SIZE:
        raise digest_length_error("block data", len(block), DIGEST_SIZE)
    if not path:
        raise PreconditionViolation("path must not be empty")
    if not 0 <= block_index < (1 << len(path)):
        raise PreconditionViolation(
            "block index does not fit the path height",
            f"block {block_index} with path of length {len(path)}",
        )
    if not isinstance(root, Digest) or not all(isinstance(entry, Digest) for entry in path):
        raise PreconditionViolation("root and path entries must be Digest values")

    current = bytes(block)
    for level, sibling in enumerate(path):
        if (block_index >> level) & 1:
            current = compress_bytes(sibling.value + current, cipher)
        else:
            current = compress_bytes(current + sibling.value, cipher)
    return current == root.value
