from __future__ import annotations

import re

from mergegate.models import TaskMetadata


_DUPLICATE_MARKER = "duplicate"
_DUPLICATE_ARTIFACT_PREFIX = "duplicate:"
_TASK_ARTIFACT_PREFIX = "task-"
_PLACEHOLDER_PROOF_RE = re.compile(r"^\s*(?:n/?a|none|tbd|-)(?![a-z0-9])", re.IGNORECASE)


def is_duplicate_closure(metadata: TaskMetadata) -> bool:
    if metadata.auto_close_reason and _DUPLICATE_MARKER in metadata.auto_close_reason.lower():
        return True
    if metadata.duplicate_of or metadata.duplicate_proof:
        return True
    handoff = metadata.review_handoff
    if handoff is None or not handoff.doc_only:
        return False
    texts = (handoff.artifact_path, handoff.test_proof, handoff.known_caveats)
    return any(text and _DUPLICATE_MARKER in text.lower() for text in texts)


def canonical_reference(task_id: str, metadata: TaskMetadata) -> str | None:
    """Return the task this one claims to duplicate, ignoring self-references."""
    duplicate_of = (metadata.duplicate_of or "").strip()
    if duplicate_of and duplicate_of != task_id:
        return duplicate_of
    for artifact in metadata.artifacts or ():
        candidate = artifact.strip()
        if candidate.startswith(_DUPLICATE_ARTIFACT_PREFIX):
            candidate = candidate[len(_DUPLICATE_ARTIFACT_PREFIX) :].strip()
        elif not candidate.startswith(_TASK_ARTIFACT_PREFIX):
            continue
        if candidate and candidate != task_id:
            return candidate
    return None


def is_placeholder_proof(text: str | None) -> bool:
    if text is None or not text.strip():
        return True
    return _PLACEHOLDER_PROOF_RE.match(text) is not None


def duplicate_closure_error(task_id: str, metadata: TaskMetadata) -> str | None:
    """Return why a duplicate closure is unproven, or ``None`` when it may proceed.

    Metadata that does not describe a duplicate closure always passes.
    """
    if not is_duplicate_closure(metadata):
        return None
    if canonical_reference(task_id, metadata) is None:
        return (
            "Duplicate closure requires a canonical reference: set metadata.duplicate_of "
            "to the original task id, or add a 'duplicate:<task-id>' artifact"
        )
    proof = metadata.duplicate_proof
    if proof is None and metadata.review_handoff is not None:
        proof = metadata.review_handoff.test_proof
    if is_placeholder_proof(proof):
        return (
            "Duplicate closure requires real proof in metadata.duplicate_proof "
            f"(got {proof!r}); placeholder text is rejected"
        )
    return None
