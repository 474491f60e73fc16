"""Utility modules for the branch kernel."""

from branch_kernel.utils.hashing import canonicalize_json, hash_commit, hash_payload

__all__ = [
    "canonicalize_json",
    "hash_commit",
    "hash_payload",
]
