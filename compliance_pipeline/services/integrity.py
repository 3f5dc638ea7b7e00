"""Audit integrity chain"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional, Union

from compliance_pipeline.models.audit import AuditLogEntry, ChainVerification

# Fields produced by chaining/signing; never part of the hashed content
CHAIN_FIELDS = {"previous_hash", "integrity_hash", "signature", "signed_at"}

GENESIS_HASH = ""


def canonicalize(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators"""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def sha256_hex(data: Union[str, bytes]) -> str:
    if isinstance(data, str):
        data = data.encode("utf-8")
    return hashlib.sha256(data).hexdigest()


def entry_content(entry: AuditLogEntry) -> Dict[str, Any]:
    return entry.model_dump(mode="json", exclude=CHAIN_FIELDS)


def compute_chain_hash(previous_hash: Optional[str], entry: AuditLogEntry) -> str:
    """SHA256(previous_hash | canonical entry content)"""
    return sha256_hex(f"{previous_hash or GENESIS_HASH}|{canonicalize(entry_content(entry))}")


def compute_data_hash(
    action: str,
    resource_type: str,
    resource_id: Optional[str],
    before_state: Any,
    after_state: Any
) -> str:
    """Hash of what changed, taken before field encryption"""
    return sha256_hex(canonicalize({
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "before_state": before_state,
        "after_state": after_state,
    }))


def verify_chain(
    entries: Iterable[AuditLogEntry],
    start_hash: Optional[str] = GENESIS_HASH
) -> ChainVerification:
    """
    Recompute the chain over entries in order

    An entry is invalid when its ``previous_hash`` does not link to the
    hash of the entry before it, or its ``integrity_hash`` does not match
    its content. Verification continues past the first bad entry so every
    invalid id is reported.
    """
    expected_previous = start_hash or GENESIS_HASH
    invalid_ids: List[str] = []
    first_invalid: Optional[int] = None
    checked = 0

    for index, entry in enumerate(entries):
        checked += 1
        recomputed = compute_chain_hash(expected_previous, entry)
        if (entry.previous_hash or GENESIS_HASH) != expected_previous or entry.integrity_hash != recomputed:
            invalid_ids.append(entry.id)
            if first_invalid is None:
                first_invalid = index
        # Continue from the stored hash so one tampered entry is not blamed on its successors
        expected_previous = entry.integrity_hash or recomputed

    return ChainVerification(
        valid=not invalid_ids,
        checked=checked,
        first_invalid_index=first_invalid,
        invalid_entry_ids=invalid_ids,
    )
