"""
Proof Registry

Issues signed proofs of file integrity, anchors them in Merkle-batched
snapshots mirrored to an object store and a permanent archive, verifies
files against every mirror, and audits the mirrors for recoverability.

Usage:
    from proof_registry.config import load_settings
    from proof_registry.registry import build_registry

    registry = build_registry(load_settings())
    proof = registry.issuer.create_proof(file_hash, {"type": "document",
                                                     "namespace": "acme",
                                                     "id": "contract-42"})
    result = registry.cascade.verify_by_hash(file_hash)
"""

__version__ = "0.1.0"
