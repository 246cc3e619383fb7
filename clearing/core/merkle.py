"""
Merkle Proofs

A small binary Merkle tree over hex SHA-256 leaves.

Attestations commit to a two-leaf tree [claim_hash, nonce_commitment]. The
inclusion path of claim_hash lets a verifier recompute the root without
trusting the attestor's bookkeeping, and the nonce keeps two attestations
of the same claim distinct.
"""

import hashlib
from typing import Optional


class MerkleTree:
    """
    Binary Merkle tree built bottom-up.

    Odd levels duplicate their last node.
    """

    def __init__(self, leaves: list[str]):
        if not leaves:
            raise ValueError("Cannot create Merkle tree with no leaves")
        self._leaves = list(leaves)
        self._levels = self._build_levels(self._leaves)

    @staticmethod
    def _hash_pair(left: str, right: str) -> str:
        return hashlib.sha256(f"{left}{right}".encode("utf-8")).hexdigest()

    @classmethod
    def _build_levels(cls, leaves: list[str]) -> list[list[str]]:
        levels = [list(leaves)]
        current = list(leaves)
        while len(current) > 1:
            if len(current) % 2 == 1:
                current = current + [current[-1]]
            current = [
                cls._hash_pair(current[i], current[i + 1])
                for i in range(0, len(current), 2)
            ]
            levels.append(current)
        return levels

    @property
    def root_hash(self) -> str:
        return self._levels[-1][0]

    def get_proof(self, leaf: str) -> Optional[tuple[list[str], list[str]]]:
        """
        Inclusion path for a leaf.

        Returns:
            (sibling_hashes, directions) where each direction says on which
            side the sibling sits ("left" or "right"), or None if absent.
        """
        try:
            index = self._leaves.index(leaf)
        except ValueError:
            return None

        path: list[str] = []
        directions: list[str] = []
        for level in self._levels[:-1]:
            padded = level + [level[-1]] if len(level) % 2 == 1 else level
            if index % 2 == 0:
                path.append(padded[index + 1])
                directions.append("right")
            else:
                path.append(padded[index - 1])
                directions.append("left")
            index //= 2
        return path, directions

    @staticmethod
    def verify_proof(
        leaf: str,
        path: list[str],
        directions: list[str],
        expected_root: str,
    ) -> bool:
        """Recompute the root from a leaf and its path."""
        if len(path) != len(directions):
            return False
        current = leaf
        for sibling, direction in zip(path, directions):
            if direction == "left":
                current = MerkleTree._hash_pair(sibling, current)
            elif direction == "right":
                current = MerkleTree._hash_pair(current, sibling)
            else:
                return False
        return current == expected_root
