"""
Binary Merkle tree over hex digests.

Parents hash the concatenated hex strings of their children. An odd node
at any level is paired with itself; a single leaf is its own root.
"""

from typing import Any, Dict, List

from .util import sha256_hex


def _parent(left: str, right: str) -> str:
    return sha256_hex(left + right)


def build_levels(leaves: List[str]) -> List[List[str]]:
    """
    levels[0] = leaves, levels[-1] = [root]

    Raises:
        ValueError: if there are no leaves
    """
    if not leaves:
        raise ValueError("cannot build a Merkle tree with no leaves")
    levels = [list(leaves)]
    while len(levels[-1]) > 1:
        cur = levels[-1]
        nxt = []
        for i in range(0, len(cur), 2):
            left = cur[i]
            right = cur[i + 1] if i + 1 < len(cur) else left
            nxt.append(_parent(left, right))
        levels.append(nxt)
    return levels


def merkle_root(leaves: List[str]) -> str:
    return build_levels(leaves)[-1][0]


def merkle_proof(leaves: List[str], index: int) -> List[Dict[str, Any]]:
    """Inclusion proof for the leaf at index, bottom level first."""
    if index < 0 or index >= len(leaves):
        raise IndexError(f"leaf index {index} out of range")
    levels = build_levels(leaves)
    proof = []
    idx = index
    for lvl in range(len(levels) - 1):
        cur = levels[lvl]
        sib = idx ^ 1
        sibling_hash = cur[sib] if sib < len(cur) else cur[idx]
        proof.append({
            "level": lvl,
            "sibling_hash": sibling_hash,
            "direction": "left" if sib < idx else "right",
        })
        idx //= 2
    return proof


def verify_merkle_proof(leaf: str, proof: List[Dict[str, Any]], root: str) -> bool:
    node = leaf
    for step in proof:
        if step["direction"] == "left":
            node = _parent(step["sibling_hash"], node)
        else:
            node = _parent(node, step["sibling_hash"])
    return node == root
