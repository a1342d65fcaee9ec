# helper/merkle.py
from __future__ import annotations

import hashlib
from typing import List, Optional, Tuple

HASH_HEX_LEN = 64


def normalize_hex(s: str, *, expected_len: Optional[int] = None) -> str:
    """
    Normalize and validate a hex-encoded string.

    - Accepts optional '0x' / '0X' prefix.
    - Strips surrounding whitespace and lower-cases the digits, so that the
      same hash written two ways normalizes to one value.
    - Raises ValueError if the remaining characters are not valid hex, or
      if `expected_len` (in hex characters) is given and does not match.
    """
    if not isinstance(s, str):
        raise ValueError(f"Expected hex string, got {type(s).__name__}: {s!r}")

    s = s.strip()
    if s.startswith(("0x", "0X")):
        s = s[2:]

    # bytes.fromhex will raise if s is not valid hex.
    try:
        bytes.fromhex(s)
    except ValueError as exc:
        raise ValueError(f"Not a valid hex string: {s!r}") from exc

    if expected_len is not None and len(s) != expected_len:
        raise ValueError(
            f"Expected {expected_len} hex characters, got {len(s)}: {s!r}"
        )

    return s.lower()


def hash_pair_hex(left: str, right: str) -> str:
    """
    Hash the ordered concatenation left || right of two hex-encoded hashes.

    Unlike a sorted-pair scheme, position matters: the verifier learns the
    side of each sibling from the bits of the leaf index, so a branch binds
    the leaf to one position in the tree.
    """
    return hashlib.sha256(
        bytes.fromhex(normalize_hex(left)) + bytes.fromhex(normalize_hex(right))
    ).hexdigest()


def build_merkle_tree(leaves: List[str]) -> Tuple[str, List[List[str]]]:
    """
    Build a binary Merkle tree from already-hashed leaves.

    Input:
        leaves: list of hex-encoded 32-byte hashes.

    Output:
        - root: Merkle root (hex string)
        - proofs: proofs[i] is the list of sibling hashes, bottom-up, needed
          to recompute the root from leaves[i] at index i.

    When there is an odd number of nodes at a level, the last node is paired
    with itself.
    """
    if not leaves:
        raise ValueError("Cannot build Merkle tree with no leaves")

    level = [normalize_hex(x, expected_len=HASH_HEX_LEN) for x in leaves]
    # positions[i] = index in the current level of the node on leaf i's path
    positions = list(range(len(level)))
    proofs: List[List[str]] = [[] for _ in range(len(level))]

    while len(level) > 1:
        next_level: List[str] = []
        for i in range(0, len(level), 2):
            left = level[i]
            right = level[i + 1] if i + 1 < len(level) else left
            next_level.append(hash_pair_hex(left, right))

        for leaf_idx, pos in enumerate(positions):
            sibling = pos ^ 1
            if sibling >= len(level):
                sibling = pos
            proofs[leaf_idx].append(level[sibling])
            positions[leaf_idx] = pos // 2

        level = next_level

    return level[0], proofs


def compute_merkle_root(leaf: str, proof: List[str], leaf_index: int) -> str:
    """
    Fold a leaf and its sibling list into a root.

    Bit k of `leaf_index` (LSB first) tells whether the running hash is the
    right child (1) or the left child (0) at level k:

        h = leaf
        for k, sib in enumerate(proof):
            h = H(sib || h) if bit_k(leaf_index) else H(h || sib)
    """
    if leaf_index < 0:
        raise ValueError(f"leaf_index must be non-negative, got {leaf_index}")
    if leaf_index >= (1 << len(proof)):
        raise ValueError(
            f"leaf_index {leaf_index} does not fit a path of length {len(proof)}"
        )

    h = normalize_hex(leaf, expected_len=HASH_HEX_LEN)
    idx = leaf_index
    for sib in proof:
        sib = normalize_hex(sib, expected_len=HASH_HEX_LEN)
        if idx & 1:
            h = hash_pair_hex(sib, h)
        else:
            h = hash_pair_hex(h, sib)
        idx >>= 1
    return h


def verify_merkle_proof(
    leaf: str,
    proof: List[str],
    expected_root: str,
    leaf_index: int,
) -> bool:
    """
    Return True iff leaf + proof at `leaf_index` recomputes `expected_root`.

    Malformed input (bad hex, index out of range) yields False; callers that
    need the reason should call compute_merkle_root directly.
    """
    try:
        root = normalize_hex(expected_root, expected_len=HASH_HEX_LEN)
        return compute_merkle_root(leaf, proof, leaf_index) == root
    except ValueError:
        return False
