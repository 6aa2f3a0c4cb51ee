"""Content fingerprinting for tamper detection.

A fingerprint is a digest over a certificate's canonical fields plus its
rendered document body. Fields are hashed in a fixed order with an explicit
length prefix each, so two machines always agree on the bytes being hashed
and no text can slide from one field into another without changing the
digest.

The algorithm is versioned: the tag (e.g. ``sha256-v1``) is stored next to
every fingerprint and verification always hashes with the stored tag.
"""

import hashlib
import hmac
import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import date

from core.errors import ValidationError

DEFAULT_ALGORITHM = "sha256-v1"

HASH_ALGORITHMS: dict[str, Callable[[bytes], bytes]] = {
    "sha256-v1": lambda data: hashlib.sha256(data).digest(),
}

CANONICAL_FIELD_ORDER: tuple[str, ...] = (
    "id",
    "serial_number",
    "issuer_id",
    "recipient_id",
    "issuer_name",
    "recipient_name",
    "recipient_email",
    "issue_date",
    "expiry_date",
    "template_id",
    "template_version",
    "title",
    "description",
    "metadata",
    "document_body",
)


@dataclass(frozen=True)
class CanonicalFields:
    """The certificate fields that participate in fingerprinting."""

    id: str
    serial_number: str
    issuer_id: str
    recipient_id: str
    issuer_name: str
    recipient_name: str
    recipient_email: str
    issue_date: date
    expiry_date: date | None
    template_id: str
    template_version: int
    title: str
    description: str
    metadata: Mapping[str, str] = field(default_factory=dict)

    def as_strings(self) -> dict[str, str]:
        return {
            "id": self.id,
            "serial_number": self.serial_number,
            "issuer_id": self.issuer_id,
            "recipient_id": self.recipient_id,
            "issuer_name": self.issuer_name,
            "recipient_name": self.recipient_name,
            "recipient_email": self.recipient_email,
            "issue_date": self.issue_date.isoformat(),
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else "",
            "template_id": self.template_id,
            "template_version": str(self.template_version),
            "title": self.title,
            "description": self.description,
            "metadata": json.dumps(
                dict(self.metadata),
                sort_keys=True,
                separators=(",", ":"),
                ensure_ascii=False,
            ),
        }


def canonical_bytes(document_body: str, fields: CanonicalFields) -> bytes:
    """Serialize fields and body as ``name:length:value\\n`` records."""
    values = fields.as_strings()
    values["document_body"] = document_body

    parts: list[bytes] = []
    for name in CANONICAL_FIELD_ORDER:
        encoded = values[name].encode("utf-8")
        parts.append(f"{name}:{len(encoded)}:".encode("ascii") + encoded + b"\n")
    return b"".join(parts)


def get_hash_function(algorithm: str) -> Callable[[bytes], bytes]:
    try:
        return HASH_ALGORITHMS[algorithm]
    except KeyError:
        raise ValidationError(
            f"Unknown hash algorithm {algorithm!r}", field="hash_algorithm"
        ) from None


def fingerprint(
    document_body: str,
    fields: CanonicalFields,
    algorithm: str = DEFAULT_ALGORITHM,
) -> str:
    """Return the lowercase hex fingerprint of a certificate."""
    digest = get_hash_function(algorithm)(canonical_bytes(document_body, fields))
    return digest.hex()


def fingerprints_match(expected: str, actual: str) -> bool:
    """Constant-time comparison of two hex fingerprints."""
    return hmac.compare_digest(expected.lower(), actual.lower())


# --- Merkle proofs ---
#
# A parent is sha256(current || sibling), folded from leaf to root in the
# order the siblings are given. A proof may also flag levels where the
# sibling sits on the left; without flags every sibling is appended on the
# right, which is the form issued by the ledger contract.


def merkle_parent(a: bytes, b: bytes) -> bytes:
    return hashlib.sha256(a + b).digest()


def _next_level(level: list[bytes]) -> list[bytes]:
    parents = [
        merkle_parent(level[i], level[i + 1]) for i in range(0, len(level) - 1, 2)
    ]
    # Odd node out is carried up unchanged
    if len(level) % 2:
        parents.append(level[-1])
    return parents


def merkle_root(leaves: Sequence[bytes]) -> bytes:
    if not leaves:
        raise ValidationError("Cannot build a Merkle tree without leaves")

    level = list(leaves)
    while len(level) > 1:
        level = _next_level(level)
    return level[0]


def build_merkle_proof(
    leaves: Sequence[bytes], index: int
) -> tuple[list[bytes], list[bool]]:
    """Sibling hashes from ``leaves[index]`` to the root, with side flags.

    The second list is True at each level where the sibling is the left
    child. A leaf on the left-most path gets all-False flags, so its
    siblings alone form a valid flag-free proof.
    """
    if not 0 <= index < len(leaves):
        raise ValidationError(f"Leaf index {index} out of range")

    siblings: list[bytes] = []
    sibling_on_left: list[bool] = []
    level = list(leaves)
    while len(level) > 1:
        sibling = index ^ 1
        if sibling < len(level):
            siblings.append(level[sibling])
            sibling_on_left.append(sibling < index)
        level = _next_level(level)
        index //= 2
    return siblings, sibling_on_left


def verify_merkle_proof(
    root: bytes,
    leaf: bytes,
    siblings: Sequence[bytes],
    sibling_on_left: Sequence[bool] | None = None,
) -> bool:
    if not sibling_on_left:
        sibling_on_left = [False] * len(siblings)
    if len(sibling_on_left) != len(siblings):
        return False

    current = leaf
    for sibling, on_left in zip(siblings, sibling_on_left, strict=True):
        current = (
            merkle_parent(sibling, current)
            if on_left
            else merkle_parent(current, sibling)
        )
    return hmac.compare_digest(current, root)

